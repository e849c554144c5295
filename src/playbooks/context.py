"""ExecutionContext - mutable state of a single playbook run."""

import logging
import uuid
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from jinja2.sandbox import SandboxedEnvironment
from pydantic import BaseModel, ConfigDict, Field

from .errors import ExecutionStateError
from .models import Playbook

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def elapsed_ms(start: datetime, end: datetime) -> int:
    """Whole milliseconds between two timestamps."""
    return (end - start) // timedelta(milliseconds=1)


def to_jsonable(value: Any) -> Any:
    """Detached, JSON-compatible copy of a value; unknown objects become strings."""
    if isinstance(value, Enum):
        return value.value
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, BaseModel):
        return to_jsonable(value.model_dump())
    if isinstance(value, Mapping):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_jsonable(v) for v in value]
    return str(value)


class ExecutionStatus(str, Enum):
    """Status of a run or of a single step."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )


class LogLevel(str, Enum):
    """Severity of an execution log entry."""

    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


_PY_LEVELS = {
    LogLevel.DEBUG: logging.DEBUG,
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}

_MISSING = object()


class LogEntry(BaseModel):
    """One timestamped entry of the execution log."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utcnow)
    level: LogLevel
    message: str
    step_id: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


class StepResult(BaseModel):
    """Outcome of one step invocation. Built once, never modified."""

    model_config = ConfigDict(frozen=True)

    step_id: str
    step_name: str = ""
    step_type: str = ""
    started_at: datetime
    completed_at: Optional[datetime] = None
    status: ExecutionStatus
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None


class ExecutionContext:
    """
    Context for playbook execution.

    Owned by exactly one run. Tracks variables, step results, status and an
    append-only log. Once the status is terminal every mutating method
    raises ExecutionStateError.
    """

    def __init__(
        self,
        playbook_id: str,
        variables: Optional[Dict[str, Any]] = None,
        execution_id: Optional[str] = None,
        alert_id: Optional[str] = None,
        case_id: Optional[str] = None,
    ) -> None:
        """
        Initialize an execution context in the pending state.

        Prefer ExecutionContext.create() which also seeds bookkeeping
        variables and marks the run as started.
        """
        self.playbook_id = playbook_id
        self.execution_id = execution_id or str(uuid.uuid4())
        self.variables: Dict[str, Any] = dict(variables or {})
        self.step_results: Dict[str, StepResult] = {}
        self.status = ExecutionStatus.PENDING
        self.started_at = utcnow()
        self.completed_at: Optional[datetime] = None
        self.alert_id = alert_id
        self.case_id = case_id
        self.error: Optional[str] = None
        self.current_step_id: Optional[str] = None
        self.logs: List[LogEntry] = []
        self._jinja_env = SandboxedEnvironment(autoescape=False)

    @classmethod
    def create(
        cls,
        playbook: Playbook,
        initial_variables: Optional[Dict[str, Any]] = None,
        alert_id: Optional[str] = None,
        case_id: Optional[str] = None,
    ) -> "ExecutionContext":
        """
        Create the context for a new run of a playbook.

        Args:
            playbook: The playbook about to run
            initial_variables: Bindings supplied by the run initiator
            alert_id: Originating alert, if any
            case_id: Originating case, if any

        Returns:
            A running ExecutionContext with one log entry
        """
        context = cls(
            playbook_id=playbook.id,
            variables={**playbook.variables, **(initial_variables or {})},
            alert_id=alert_id,
            case_id=case_id,
        )
        context.variables["playbook_name"] = playbook.name
        context.variables["execution_start_time"] = context.started_at.isoformat()
        context.status = ExecutionStatus.RUNNING
        context.log(
            LogLevel.INFO,
            f"Started execution of playbook: {playbook.name}",
            data={"playbook_id": playbook.id},
        )
        return context

    @property
    def is_terminal(self) -> bool:
        """Whether the run has finished."""
        return self.status.is_terminal

    def _ensure_mutable(self) -> None:
        if self.is_terminal:
            raise ExecutionStateError(self.execution_id, self.status.value)

    def log(
        self,
        level: LogLevel,
        message: str,
        step_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
    ) -> "ExecutionContext":
        """Append an entry to the execution log and mirror it to the module logger."""
        self._ensure_mutable()
        self.logs.append(
            LogEntry(level=level, message=message, step_id=step_id, data=data)
        )
        logger.log(
            _PY_LEVELS[level], "[%s] %s", self.execution_id, message
        )
        return self

    def set_variable(self, name: str, value: Any) -> None:
        """Set a variable in the context."""
        self._ensure_mutable()
        self.variables[name] = value

    def get_variable(self, name: str, default: Any = None) -> Any:
        """Get a variable from the context."""
        return self.variables.get(name, default)

    def record_step_result(self, step_id: str, result: StepResult) -> "ExecutionContext":
        """
        Store a step's result and expose its output to later steps.

        Sets '<step_id>_result' and 'last_step_result' to the step output.
        """
        self._ensure_mutable()
        self.step_results[step_id] = result
        self.variables[f"{step_id}_result"] = result.output
        self.variables["last_step_result"] = result.output
        return self

    def complete(self) -> None:
        """Mark the run as completed."""
        self._finish(ExecutionStatus.COMPLETED)

    def fail(self, error: str) -> None:
        """Mark the run as failed with a top-level error."""
        self._ensure_mutable()
        self.error = error
        self._finish(ExecutionStatus.FAILED)

    def cancel(self, reason: str) -> None:
        """Mark the run as cancelled."""
        self._ensure_mutable()
        self.error = reason
        self._finish(ExecutionStatus.CANCELLED)

    def _finish(self, status: ExecutionStatus) -> None:
        self._ensure_mutable()
        self.completed_at = utcnow()
        self.current_step_id = None
        self.status = status

    @property
    def duration_ms(self) -> int:
        """Elapsed time of the run so far (or in total once finished)."""
        end = self.completed_at or utcnow()
        return elapsed_ms(self.started_at, end)

    def render_template(self, template_str: str) -> Any:
        """
        Render a Jinja2 template string with current context variables.

        Args:
            template_str: Template string to render

        Returns:
            Rendered result. A template that is a single reference such as
            "{{ enrich_result.score }}" returns the referenced value itself.
        """
        if "{{" not in template_str and "{%" not in template_str:
            return template_str

        stripped = template_str.strip()
        if (
            stripped.startswith("{{")
            and stripped.endswith("}}")
            and stripped.count("{{") == 1
        ):
            value = self._lookup_path(stripped[2:-2].strip())
            if value is not _MISSING:
                return value

        try:
            template = self._jinja_env.from_string(template_str)
            return template.render(**self.variables)
        except Exception as e:
            # Broken templates pass through unchanged.
            logger.debug("Template left unrendered (%s): %s", e, template_str)
            return template_str

    def _lookup_path(self, var_path: str) -> Any:
        """Resolve 'a.b.c' against the variables (mappings only)."""
        parts = var_path.split(".")
        if not all(part.isidentifier() for part in parts):
            return _MISSING
        value: Any = self.variables
        for part in parts:
            if not isinstance(value, dict) or part not in value:
                return _MISSING
            value = value[part]
        return value

    def render_dict(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Recursively render all template strings in a dictionary.

        Args:
            data: Dictionary potentially containing template strings

        Returns:
            Dictionary with all templates rendered
        """
        return {key: self._render_value(value) for key, value in data.items()}

    def _render_value(self, value: Any) -> Any:
        if isinstance(value, str):
            return self.render_template(value)
        if isinstance(value, dict):
            return self.render_dict(value)
        if isinstance(value, list):
            return [self._render_value(item) for item in value]
        return value

    def __repr__(self) -> str:
        return (
            f"<ExecutionContext id='{self.execution_id}' "
            f"playbook='{self.playbook_id}' status='{self.status.value}' "
            f"steps={len(self.step_results)}>"
        )
