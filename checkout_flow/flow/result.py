"""
Dispatch Result.

Defines the result returned by the orchestrator for every event.
"""

from dataclasses import dataclass

from .effects import Effect
from .schemas import FlowState


@dataclass
class DispatchResult:
    """Result from processing one event."""
    state: FlowState
    accepted: bool = True
    effect: Effect | None = None
