"""StepDispatcher - executes a single step and decides where to continue."""

import inspect
import logging
import time
from collections import ChainMap
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from ..actions.base import ActionHandler, ActionOutcome, simulate_action
from .conditions import ConditionEvaluator
from .context import (
    ExecutionContext,
    ExecutionStatus,
    LogLevel,
    StepResult,
    elapsed_ms,
    to_jsonable,
    utcnow,
)
from .errors import (
    ActionExecutionError,
    ExecutionCancelledError,
    MissingInputError,
    PlaybookExecutionError,
    StepConfigurationError,
    UnknownStepTypeError,
)
from .metrics import MetricsCollector
from .models import ConditionStep, InputStep, OutputStep, Step, StepType

logger = logging.getLogger(__name__)

# (output, continuation ids)
_HandlerResult = Tuple[Dict[str, Any], List[str]]


@dataclass
class StepOutcome:
    """Result of one step plus the ids of the steps to continue to."""

    result: StepResult
    next_step_ids: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.result.status == ExecutionStatus.COMPLETED


class StepDispatcher:
    """
    Executes one step according to its type.

    The dispatcher never raises for step-local problems: configuration
    errors, collaborator failures and unknown step types all produce a
    failed StepResult. Only ExecutionCancelledError escapes.
    """

    def __init__(
        self,
        action_handler: Optional[ActionHandler] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        metrics: Optional[MetricsCollector] = None,
    ) -> None:
        """
        Initialize the dispatcher.

        Args:
            action_handler: Collaborator for action, integration and
                notification steps. Defaults to a simulated collaborator.
            evaluator: Condition evaluator for condition steps
            metrics: Optional MetricsCollector for step metrics
        """
        self.action_handler: ActionHandler = action_handler or simulate_action
        self.evaluator = evaluator or ConditionEvaluator()
        self.metrics = metrics
        self._handlers: Dict[
            str, Callable[[Any, ExecutionContext], Awaitable[_HandlerResult]]
        ] = {
            StepType.TRIGGER.value: self._run_trigger,
            StepType.ACTION.value: self._run_action,
            StepType.INTEGRATION.value: self._run_action,
            StepType.NOTIFICATION.value: self._run_action,
            StepType.CONDITION.value: self._run_condition,
            StepType.INPUT.value: self._run_input,
            StepType.OUTPUT.value: self._run_output,
        }

    async def dispatch(self, step: Step, context: ExecutionContext) -> StepOutcome:
        """
        Execute a step and record how it went in the execution log.

        Args:
            step: The step to execute
            context: Context of the running execution

        Returns:
            StepOutcome with the (not yet recorded) StepResult

        Raises:
            ExecutionCancelledError: If the collaborator cancelled the run
        """
        step_type = step.type_name
        context.current_step_id = step.id
        context.log(LogLevel.INFO, f"Executing step: {step.display_name}", step_id=step.id)

        started_at = utcnow()
        start = time.perf_counter()
        output: Optional[Dict[str, Any]] = None
        next_ids: List[str] = []
        error: Optional[str] = None

        try:
            handler = self._handlers.get(step_type)
            if handler is None:
                raise UnknownStepTypeError(step.id, step_type)
            output, next_ids = await handler(step, context)
        except ExecutionCancelledError:
            raise
        except PlaybookExecutionError as e:
            error = str(e)

        duration = time.perf_counter() - start
        completed_at = utcnow()
        result = StepResult(
            step_id=step.id,
            step_name=step.name,
            step_type=step_type,
            started_at=started_at,
            completed_at=completed_at,
            status=ExecutionStatus.FAILED if error else ExecutionStatus.COMPLETED,
            output=output,
            error=error,
            duration_ms=elapsed_ms(started_at, completed_at),
        )

        if error:
            context.log(
                LogLevel.ERROR,
                f"Error executing step {step.display_name}: {error}",
                step_id=step.id,
            )
        else:
            context.log(
                LogLevel.INFO,
                f"Completed step: {step.display_name}",
                step_id=step.id,
                data=to_jsonable(result.model_dump()),
            )

        if self.metrics:
            self.metrics.increment_counter(
                "step_executions_total",
                {"type": step_type, "status": result.status.value},
                help_text="Total step executions",
            )
            self.metrics.observe_histogram(
                "step_duration_seconds",
                duration,
                {"type": step_type},
                help_text="Step execution duration",
            )

        return StepOutcome(result=result, next_step_ids=next_ids if not error else [])

    async def _run_trigger(self, step: Step, context: ExecutionContext) -> _HandlerResult:
        return {"triggered": True}, list(step.next_steps)

    async def _run_action(self, step: Step, context: ExecutionContext) -> _HandlerResult:
        """Invoke the action collaborator with the rendered configuration."""
        step_type = step.type_name
        config = context.render_dict(step.config.as_dict())

        try:
            raw = self.action_handler(step_type, config, dict(context.variables))
            if inspect.isawaitable(raw):
                raw = await raw
            outcome = ActionOutcome.model_validate(raw)
        except ExecutionCancelledError:
            raise
        except ValidationError as e:
            raise ActionExecutionError(
                step.id, step_type, config, f"Invalid collaborator outcome: {e}", e
            ) from e
        except Exception as e:
            raise ActionExecutionError(
                step.id, step_type, config, str(e) or type(e).__name__, e
            ) from e

        if not outcome.succeeded:
            raise ActionExecutionError(
                step.id,
                step_type,
                config,
                outcome.error or f"{step_type.capitalize()} reported failure",
            )

        return {**config, **outcome.output}, list(step.next_steps)

    async def _run_condition(
        self, step: ConditionStep, context: ExecutionContext
    ) -> _HandlerResult:
        """Evaluate the condition and pick the continuation."""
        config = step.config
        if not config.condition:
            raise StepConfigurationError(
                step.id, "condition", "Condition step is missing condition configuration"
            )

        # Unbound names fall back to the previous step's output.
        scope: Mapping[str, Any] = context.variables
        last_output = context.variables.get("last_step_result")
        if isinstance(last_output, Mapping):
            scope = ChainMap(context.variables, last_output)

        value, eval_error = self.evaluator.evaluate_detailed(config.condition, scope)
        output: Dict[str, Any] = {"condition_result": value}
        if eval_error:
            output["condition_error"] = eval_error
            context.log(
                LogLevel.WARNING,
                f"Condition evaluated as false: {eval_error}",
                step_id=step.id,
            )

        if self.metrics:
            self.metrics.increment_counter(
                "condition_evaluations_total",
                {"result": str(value).lower()},
                help_text="Total condition evaluations",
            )

        if not config.has_explicit_paths:
            return output, list(step.next_steps)

        target = config.true_path if value else config.false_path
        output["path_taken"] = target
        context.log(
            LogLevel.INFO,
            f"Condition routed to {'true' if value else 'false'} path: {target}",
            step_id=step.id,
        )
        return output, [target]

    async def _run_input(self, step: InputStep, context: ExecutionContext) -> _HandlerResult:
        """Apply declared defaults and check required variables."""
        declared = step.config.variables
        missing = [
            name
            for name in step.config.required
            if context.get_variable(name) is None and declared.get(name) is None
        ]
        if missing:
            raise MissingInputError(step.id, missing)

        resolved: Dict[str, Any] = {}
        for name, default in declared.items():
            if name not in context.variables:
                context.set_variable(name, default)
            resolved[name] = context.get_variable(name)
        for name in step.config.required:
            resolved.setdefault(name, context.get_variable(name))
        return resolved, list(step.next_steps)

    async def _run_output(self, step: OutputStep, context: ExecutionContext) -> _HandlerResult:
        return (
            {name: context.get_variable(name) for name in step.config.variables},
            list(step.next_steps),
        )
