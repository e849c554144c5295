"""Actions - side-effecting collaborators invoked by playbook steps."""

from .base import (
    Action,
    ActionHandler,
    ActionOutcome,
    ActionStatus,
    simulate_action,
)
from .registry import ActionRegistry
from .validation import validate_config

__all__ = [
    "Action",
    "ActionHandler",
    "ActionOutcome",
    "ActionStatus",
    "ActionRegistry",
    "simulate_action",
    "validate_config",
]
