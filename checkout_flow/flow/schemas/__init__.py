"""
Flow Schemas.

Enumerations shared by the flow models, the orchestrator and the HTTP layer.
"""

from .phases import FlowState, FlowVariant, SessionRole, BUSY_STATES

__all__ = [
    "FlowState",
    "FlowVariant",
    "SessionRole",
    "BUSY_STATES",
]
