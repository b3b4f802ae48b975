from .checkout import (
    CheckoutEventRequest,
    CheckoutEventResponse,
    CheckoutStartRequest,
    FlowSnapshot,
    build_flow_snapshot,
)

__all__ = [
    "CheckoutEventRequest",
    "CheckoutEventResponse",
    "CheckoutStartRequest",
    "FlowSnapshot",
    "build_flow_snapshot",
]
