"""Custom exceptions for playbook execution with enhanced error context."""

from difflib import get_close_matches
from typing import Any, Dict, List, Optional, Type

from pydantic import BaseModel, ValidationError


class PlaybookExecutionError(Exception):
    """Base exception for playbook execution errors."""

    pass


class StepConfigurationError(PlaybookExecutionError):
    """
    Raised when a step's configuration cannot be used.

    The step fails; the run continues down other reachable branches.
    """

    def __init__(self, step_id: str, field_name: str, reason: str) -> None:
        """
        Initialize StepConfigurationError.

        Args:
            step_id: The misconfigured step
            field_name: The configuration field at fault
            reason: Human-readable description of the problem
        """
        self.step_id = step_id
        self.field_name = field_name
        self.reason = reason

        super().__init__(f"Configuration error in step '{step_id}' ({field_name}): {reason}")


class UnknownStepTypeError(PlaybookExecutionError):
    """Raised when the dispatcher has no behavior for a step type."""

    def __init__(self, step_id: str, step_type: str) -> None:
        self.step_id = step_id
        self.step_type = step_type

        super().__init__(f"Unknown step type: {step_type}")


class ActionNotFoundError(PlaybookExecutionError):
    """
    Raised when an action is not found in the registry.

    Provides suggestions for close matches.
    """

    def __init__(self, action_name: str, available_actions: List[str]) -> None:
        """
        Initialize ActionNotFoundError.

        Args:
            action_name: The action name that was not found
            available_actions: List of all registered action names
        """
        self.action_name = action_name
        self.available_actions = available_actions

        suggestions = get_close_matches(action_name, available_actions, n=3, cutoff=0.6)

        message = f"Action '{action_name}' is not registered"
        if suggestions:
            message += f" (did you mean: {', '.join(suggestions)})"
        elif available_actions:
            message += f" (available: {', '.join(sorted(available_actions))})"

        super().__init__(message)


class ActionExecutionError(PlaybookExecutionError):
    """
    Raised when the action collaborator fails or reports failure.

    Keeps the rendered configuration for debugging.
    """

    def __init__(
        self,
        step_id: str,
        step_type: str,
        config: Dict[str, Any],
        reason: str,
        original_error: Optional[Exception] = None,
    ) -> None:
        """
        Initialize ActionExecutionError.

        Args:
            step_id: The step whose collaborator failed
            step_type: action, integration or notification
            config: The rendered configuration passed to the collaborator
            reason: Failure message reported by (or derived from) the collaborator
            original_error: The exception raised by the collaborator, if any
        """
        self.step_id = step_id
        self.step_type = step_type
        self.config = config
        self.reason = reason
        self.original_error = original_error

        super().__init__(reason)

    def describe(self) -> str:
        """Multi-line description including the configuration."""
        lines = [
            f"{self.step_type.capitalize()} failed in step '{self.step_id}'",
            f"  Error: {self.reason}",
        ]
        if self.original_error is not None:
            lines.append(f"  Cause: {type(self.original_error).__name__}")
        lines.append("")
        lines.append("Configuration:")
        lines.append(_format_dict(self.config, indent=2))
        return "\n".join(lines)


class InvalidInputError(PlaybookExecutionError):
    """
    Raised when action configuration validation fails.

    Provides detailed Pydantic validation errors.
    """

    def __init__(
        self,
        action_name: str,
        schema: Type[BaseModel],
        input_data: Dict[str, Any],
        validation_error: ValidationError,
    ):
        """
        Initialize InvalidInputError.

        Args:
            action_name: The action that failed validation
            schema: The Pydantic schema used for validation
            input_data: The configuration that failed validation
            validation_error: The Pydantic ValidationError
        """
        self.action_name = action_name
        self.schema = schema
        self.input_data = input_data
        self.validation_error = validation_error

        problems = []
        for error in validation_error.errors():
            field = ".".join(str(loc) for loc in error["loc"])
            problems.append(f"{field}: {error['msg']}")

        message = f"Invalid configuration for action '{action_name}' ({schema.__name__}): "
        message += "; ".join(problems)

        super().__init__(message)


class MissingInputError(PlaybookExecutionError):
    """Raised when an input step's required variables are not bound."""

    def __init__(self, step_id: str, missing: List[str]) -> None:
        self.step_id = step_id
        self.missing = missing

        super().__init__(f"Missing required input variables: {', '.join(missing)}")


class ConditionEvaluationError(PlaybookExecutionError):
    """
    Raised when a condition expression cannot be parsed or evaluated.

    Never escapes the evaluator's public evaluate(); it is converted to a
    False result there.
    """

    def __init__(self, expression: str, reason: str, position: Optional[int] = None):
        """
        Initialize ConditionEvaluationError.

        Args:
            expression: The expression that failed
            reason: What went wrong
            position: Character offset of the failure, when known
        """
        self.expression = expression
        self.reason = reason
        self.position = position

        message = reason
        if position is not None:
            message += f" at position {position}"
        message += f" in condition: {expression}"

        super().__init__(message)


class MissingTriggerError(PlaybookExecutionError):
    """Raised when a playbook has no entry step."""

    def __init__(self, playbook_id: str) -> None:
        self.playbook_id = playbook_id

        super().__init__("Playbook has no trigger step")


class CycleDetectedError(PlaybookExecutionError):
    """Raised when traversal routes back to a step on the current path."""

    def __init__(self, path: List[str]) -> None:
        self.path = path

        super().__init__(f"Cycle detected: {' -> '.join(path)}")


class TraversalDepthError(PlaybookExecutionError):
    """Raised when a branch is nested deeper than the configured maximum."""

    def __init__(self, step_id: str, max_depth: int) -> None:
        self.step_id = step_id
        self.max_depth = max_depth

        super().__init__(
            f"Maximum traversal depth {max_depth} exceeded at step '{step_id}'"
        )


class ExecutionCancelledError(PlaybookExecutionError):
    """
    Raised by an action collaborator to cancel the whole run.

    The run ends with status 'cancelled' instead of failing the step.
    """

    def __init__(self, reason: str = "Execution cancelled") -> None:
        self.reason = reason

        super().__init__(reason)


class ExecutionStateError(PlaybookExecutionError):
    """Raised when a terminal execution context is mutated."""

    def __init__(self, execution_id: str, status: str) -> None:
        self.execution_id = execution_id
        self.status = status

        super().__init__(
            f"Execution '{execution_id}' is {status} and can no longer be modified"
        )


def _format_dict(d: Dict[str, Any], indent: int = 0) -> str:
    """Format dictionary for readable error messages."""
    lines = []
    prefix = " " * indent

    for key, value in d.items():
        if isinstance(value, dict):
            lines.append(f"{prefix}{key}:")
            lines.append(_format_dict(value, indent + 2))
        elif isinstance(value, list):
            lines.append(f"{prefix}{key}: [{len(value)} items]")
        else:
            value_str = str(value)
            if len(value_str) > 100:
                value_str = value_str[:97] + "..."
            lines.append(f"{prefix}{key}: {value_str}")

    return "\n".join(lines)
