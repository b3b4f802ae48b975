"""
Logging configuration for the checkout flow service.

Usage:
    from checkout_flow.logging_config import setup_logging
    setup_logging()  # Call once at application startup

Environment variables:
    LOG_LEVEL: Level for the whole service (default: INFO)
    LOG_LEVEL_FLOW: Level for checkout_flow.flow only. Transitions and
        discarded completions are logged there at INFO/DEBUG.
    LOG_LEVEL_BACKENDS: Level for checkout_flow.backends only (gateway,
        directory and code provider calls)

Levels are DEBUG, INFO, WARNING, ERROR or CRITICAL. Anything else falls
back to the service level.
"""
import logging
import os
import sys
from typing import Optional

VALID_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# Subsystem logger -> env var overriding its level
SUBSYSTEM_LEVEL_VARS = {
    "checkout_flow.flow": "LOG_LEVEL_FLOW",
    "checkout_flow.backends": "LOG_LEVEL_BACKENDS",
}

NOISY_LOGGERS = ("httpx", "urllib3", "twilio.http_client", "sqlalchemy.engine")


def _resolve_level(value: Optional[str], default: str) -> str:
    if not value:
        return default
    value = value.strip().upper()
    return value if value in VALID_LEVELS else default


def setup_logging(level: str = None) -> None:
    """
    Configure logging for the application.

    Args:
        level: Service log level. If not provided, reads LOG_LEVEL and
               defaults to INFO.
    """
    level = _resolve_level(level or os.getenv("LOG_LEVEL"), "INFO")
    numeric_level = getattr(logging, level)

    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stdout,
    )

    logging.getLogger("checkout_flow").setLevel(numeric_level)
    for name, env_var in SUBSYSTEM_LEVEL_VARS.items():
        sub_level = _resolve_level(os.getenv(env_var), level)
        logging.getLogger(name).setLevel(getattr(logging, sub_level))

    if level != "DEBUG":
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).debug("Logging configured at %s level", level)
