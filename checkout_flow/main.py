# Load environment variables FIRST, before any module imports that need them
from dotenv import load_dotenv
load_dotenv()

import logging
import uuid
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.middleware.base import BaseHTTPMiddleware

from .backends import build_backends
from .config import CORS_ORIGINS
from .db import SessionLocal, init_db
from .logging_config import setup_logging
from .routes import catalog_router, checkout_router, limiter
from .services.modifiers import ModifierLookup
from .services.session import FlowSessionStore

# Configure logging at module load time
setup_logging()

logger = logging.getLogger(__name__)


# ---------- Request ID Middleware ----------
# Adds a unique request ID to each request for debugging and log correlation

class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware that adds a unique request ID to each request.
    The ID is available in request.state.request_id and returned in X-Request-ID header.
    """

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


def create_app(
    flow_store: Optional[FlowSessionStore] = None,
    modifier_lookup: Optional[ModifierLookup] = None,
) -> FastAPI:
    """
    Create the checkout API application.

    Args:
        flow_store: Store for live flows. If not provided, one is built on
            the backends selected by CHECKOUT_BACKEND, and the database
            tables are created.
        modifier_lookup: Modifier fetcher. Defaults to MODIFIERS_URL.

    Returns:
        Configured FastAPI application
    """
    if flow_store is None:
        init_db()
        flow_store = FlowSessionStore(build_backends(SessionLocal))

    app = FastAPI(
        title="Checkout Flow API",
        description="Checkout and onboarding flow: account matching, code verification and payment",
        version="1.0.0",
        openapi_tags=[
            {"name": "Health", "description": "Health check endpoints"},
            {"name": "Checkout", "description": "Checkout flow endpoints"},
            {"name": "Catalog", "description": "Catalog helpers"},
        ],
    )

    app.state.flow_store = flow_store
    app.state.modifier_lookup = modifier_lookup or ModifierLookup()

    app.add_middleware(RequestIDMiddleware)

    # Add rate limit exception handler
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # In production, set CORS_ORIGINS to restrict allowed origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(checkout_router)
    app.include_router(catalog_router)

    @app.get("/health", tags=["Health"])
    def health() -> dict:
        return {"status": "ok", "active_flows": len(app.state.flow_store)}

    logger.info("Checkout API ready")
    return app
