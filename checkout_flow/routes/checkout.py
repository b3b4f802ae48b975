"""
Checkout Routes
===============

Customer-facing endpoints that drive a checkout flow.

Endpoints:
----------
- POST /checkout/start: Start a new flow, returns its snapshot
- POST /checkout/{flow_id}/events: Dispatch an event
- GET /checkout/{flow_id}: Current snapshot
- DELETE /checkout/{flow_id}: Drop a flow
- GET /catalog/modifiers/{sku}: Modifier categories for an item

Checkout Flow:
--------------
1. Client calls /checkout/start to get a flow_id
2. Client dispatches events (ADD_TO_CART, CHECKOUT, UPDATE_FIELD,
   SUBMIT_CONTACT, CHOOSE_SMS, SUBMIT_CODE, PAY_WITH_SAVED_CARD...)
3. Each response carries the snapshot to render. By default the event
   endpoint waits for the external call the event triggered (account
   lookup, code send, payment) so the snapshot is already settled.

Events that are not legal in the current state are answered with
accepted=false and an unchanged snapshot. They are not errors.

Rate Limiting:
--------------
Event dispatch is rate limited per flow (default: 60/minute).
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from ..config import RATE_LIMIT_ENABLED, get_rate_limit_checkout
from ..flow.errors import ValidationError
from ..flow.events import build_event
from ..schemas.checkout import (
    CheckoutEventRequest,
    CheckoutEventResponse,
    CheckoutStartRequest,
    FlowSnapshot,
    build_flow_snapshot,
)
from ..services.modifiers import ModifierLookup, ModifierLookupError
from ..services.session import FlowSessionStore

logger = logging.getLogger(__name__)

checkout_router = APIRouter(prefix="/checkout", tags=["Checkout"])
catalog_router = APIRouter(prefix="/catalog", tags=["Catalog"])


# =============================================================================
# Rate Limiting Setup
# =============================================================================

def get_flow_id_or_ip(request: Request) -> str:
    """Get rate limit key from the flow id in the path or fall back to IP."""
    flow_id = request.path_params.get("flow_id")
    if flow_id:
        return f"flow:{flow_id}"
    return get_remote_address(request)


limiter = Limiter(key_func=get_flow_id_or_ip, enabled=RATE_LIMIT_ENABLED)


# =============================================================================
# Dependencies
# =============================================================================

def get_flow_store(request: Request) -> FlowSessionStore:
    return request.app.state.flow_store


def get_modifier_lookup(request: Request) -> ModifierLookup:
    return request.app.state.modifier_lookup


def _get_runner(store: FlowSessionStore, flow_id: str):
    runner = store.get(flow_id)
    if runner is None:
        raise HTTPException(status_code=404, detail="Checkout session not found")
    return runner


# =============================================================================
# Checkout Endpoints
# =============================================================================

@checkout_router.post("/start", response_model=FlowSnapshot)
@limiter.limit(get_rate_limit_checkout)
def start_checkout(
    request: Request,
    req: CheckoutStartRequest,
    store: FlowSessionStore = Depends(get_flow_store),
) -> FlowSnapshot:
    runner = store.create(req.variant, req.role)
    return build_flow_snapshot(runner.orchestrator)


@checkout_router.post("/{flow_id}/events", response_model=CheckoutEventResponse)
@limiter.limit(get_rate_limit_checkout)
async def dispatch_event(
    request: Request,
    flow_id: str,
    req: CheckoutEventRequest,
    store: FlowSessionStore = Depends(get_flow_store),
) -> CheckoutEventResponse:
    runner = _get_runner(store, flow_id)

    try:
        event = build_event(req.type, req.payload)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.message)

    result = await runner.dispatch(event)
    if req.wait:
        await runner.settle()

    logger.debug("Flow %s: %s accepted=%s state=%s", flow_id, req.type, result.accepted, runner.orchestrator.state.value)
    return CheckoutEventResponse(accepted=result.accepted, snapshot=build_flow_snapshot(runner.orchestrator))


@checkout_router.get("/{flow_id}", response_model=FlowSnapshot)
def get_checkout(flow_id: str, store: FlowSessionStore = Depends(get_flow_store)) -> FlowSnapshot:
    return build_flow_snapshot(_get_runner(store, flow_id).orchestrator)


@checkout_router.delete("/{flow_id}", status_code=204)
def discard_checkout(flow_id: str, store: FlowSessionStore = Depends(get_flow_store)) -> None:
    store.discard(flow_id)


# =============================================================================
# Catalog Endpoints
# =============================================================================

@catalog_router.get("/modifiers/{sku}")
def get_modifiers(sku: str, lookup: ModifierLookup = Depends(get_modifier_lookup)) -> dict:
    try:
        return lookup.fetch(sku)
    except ModifierLookupError as e:
        raise HTTPException(status_code=502, detail=f"Modifier lookup failed: {e}")
