"""Playbook engine - core execution logic."""

from .batch import BatchExecutor, BatchResult, BatchResults
from .conditions import ConditionEvaluator
from .config import EngineSettings, get_settings, setup_logging
from .context import (
    ExecutionContext,
    ExecutionStatus,
    LogEntry,
    LogLevel,
    StepResult,
)
from .dispatcher import StepDispatcher, StepOutcome
from .engine import PlaybookEngine
from .errors import (
    ActionExecutionError,
    ActionNotFoundError,
    ConditionEvaluationError,
    CycleDetectedError,
    ExecutionCancelledError,
    ExecutionStateError,
    InvalidInputError,
    MissingInputError,
    MissingTriggerError,
    PlaybookExecutionError,
    StepConfigurationError,
    TraversalDepthError,
    UnknownStepTypeError,
)
from .loader import PlaybookLoader, PlaybookLoadError
from .metrics import MetricsCollector, PrometheusExporter
from .models import (
    ActionStep,
    ConditionStep,
    IntegrationStep,
    InputStep,
    NotificationStep,
    OutputStep,
    Playbook,
    PlaybookStatus,
    Step,
    StepType,
    TriggerStep,
    TriggerType,
    UnknownStep,
)
from .tracer import ExecutionResult, ExecutionTracer
from .validator import PlaybookValidator, ValidationLevel, ValidationMessage

__all__ = [
    "PlaybookLoader",
    "PlaybookLoadError",
    "Playbook",
    "PlaybookStatus",
    "TriggerType",
    "Step",
    "StepType",
    "TriggerStep",
    "ActionStep",
    "IntegrationStep",
    "NotificationStep",
    "ConditionStep",
    "InputStep",
    "OutputStep",
    "UnknownStep",
    "PlaybookEngine",
    "StepDispatcher",
    "StepOutcome",
    "ConditionEvaluator",
    "ExecutionContext",
    "ExecutionStatus",
    "LogEntry",
    "LogLevel",
    "StepResult",
    "ExecutionResult",
    "ExecutionTracer",
    "PlaybookValidator",
    "ValidationLevel",
    "ValidationMessage",
    "BatchExecutor",
    "BatchResult",
    "BatchResults",
    "MetricsCollector",
    "PrometheusExporter",
    "EngineSettings",
    "get_settings",
    "setup_logging",
    "PlaybookExecutionError",
    "StepConfigurationError",
    "UnknownStepTypeError",
    "ActionNotFoundError",
    "ActionExecutionError",
    "InvalidInputError",
    "MissingInputError",
    "ConditionEvaluationError",
    "MissingTriggerError",
    "CycleDetectedError",
    "TraversalDepthError",
    "ExecutionCancelledError",
    "ExecutionStateError",
]
