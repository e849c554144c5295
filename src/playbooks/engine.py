"""PlaybookEngine - walks a playbook's step graph from its trigger."""

import logging
import time
from typing import Any, Dict, List, Optional

from ..actions.base import ActionHandler
from .conditions import ConditionEvaluator
from .config import EngineSettings, get_settings
from .context import ExecutionContext, ExecutionStatus, LogLevel
from .dispatcher import StepDispatcher
from .errors import (
    CycleDetectedError,
    ExecutionCancelledError,
    MissingTriggerError,
    TraversalDepthError,
)
from .metrics import MetricsCollector
from .models import Playbook, Step
from .tracer import ExecutionResult, ExecutionTracer

logger = logging.getLogger(__name__)


class PlaybookEngine:
    """
    Executes playbooks.

    The engine handles:
    - Depth-first traversal of the step graph from the entry trigger
    - Dispatching each step via StepDispatcher
    - Stopping a branch at a failed step while other branches continue
    - Detecting cycles and executing join steps only once
    - Building an immutable ExecutionResult for every run

    execute() never raises for problems inside the run; they end up in the
    result's status and error.
    """

    def __init__(
        self,
        action_handler: Optional[ActionHandler] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        metrics: Optional[MetricsCollector] = None,
        settings: Optional[EngineSettings] = None,
    ) -> None:
        """
        Initialize the PlaybookEngine.

        Args:
            action_handler: Collaborator for action, integration and
                notification steps. A simulated one is used if omitted.
            evaluator: Optional ConditionEvaluator
            metrics: Optional MetricsCollector for tracking execution metrics
            settings: Optional EngineSettings; defaults to get_settings()
        """
        self.settings = settings or get_settings()
        self.metrics = metrics
        self.dispatcher = StepDispatcher(
            action_handler=action_handler,
            evaluator=evaluator or ConditionEvaluator(self.settings),
            metrics=metrics,
        )

    async def execute(
        self,
        playbook: Playbook,
        initial_variables: Optional[Dict[str, Any]] = None,
        alert_id: Optional[str] = None,
        case_id: Optional[str] = None,
    ) -> ExecutionResult:
        """
        Execute a playbook.

        Args:
            playbook: The playbook to execute
            initial_variables: Variable bindings for this run
            alert_id: Originating alert, if any
            case_id: Originating case, if any

        Returns:
            ExecutionResult with status completed, failed or cancelled
        """
        context = ExecutionContext.create(
            playbook, initial_variables, alert_id=alert_id, case_id=case_id
        )
        playbook_start = time.perf_counter()

        try:
            entry = playbook.entry_step()
            if entry is None:
                raise MissingTriggerError(playbook.id)

            reached_end = await self._walk(playbook, entry, context, [])

            if reached_end:
                context.log(
                    LogLevel.INFO, f"Completed execution of playbook: {playbook.name}"
                )
                context.complete()
            else:
                error = self._failure_message(context)
                context.log(
                    LogLevel.ERROR,
                    f"Failed execution of playbook: {playbook.name}",
                    data={"error": error},
                )
                context.fail(error)

        except ExecutionCancelledError as e:
            if not context.is_terminal:
                context.log(LogLevel.WARNING, f"Execution cancelled: {e.reason}")
                context.cancel(e.reason)
        except Exception as e:
            logger.error("Playbook %s failed: %s", playbook.id, e)
            if not context.is_terminal:
                context.log(
                    LogLevel.ERROR,
                    f"Failed execution of playbook: {playbook.name}",
                    data={"error": str(e)},
                )
                context.fail(str(e) or type(e).__name__)

        if self.metrics:
            duration = time.perf_counter() - playbook_start
            self.metrics.increment_counter(
                "playbook_executions_total",
                {"playbook": playbook.id, "status": context.status.value},
                help_text="Total playbook executions",
            )
            self.metrics.observe_histogram(
                "playbook_duration_seconds",
                duration,
                {"playbook": playbook.id},
                help_text="Playbook execution duration",
            )

        return ExecutionTracer.build_result(context, playbook_name=playbook.name)

    async def _walk(
        self,
        playbook: Playbook,
        step: Step,
        context: ExecutionContext,
        path: List[str],
    ) -> bool:
        """
        Execute a step and, if it succeeds, every branch below it.

        Returns:
            True if at least one branch below (and including) this step
            ended on a successful step
        """
        if step.id in path:
            raise CycleDetectedError(path[path.index(step.id):] + [step.id])

        previous = context.step_results.get(step.id)
        if previous is not None:
            context.log(
                LogLevel.INFO,
                f"Step already executed on another branch: {step.display_name}",
                step_id=step.id,
            )
            return previous.status == ExecutionStatus.COMPLETED

        if len(path) >= self.settings.max_depth:
            raise TraversalDepthError(step.id, self.settings.max_depth)

        outcome = await self.dispatcher.dispatch(step, context)
        context.record_step_result(step.id, outcome.result)

        if not outcome.succeeded:
            return False

        children = []
        for next_id in outcome.next_step_ids:
            child = playbook.get_step(next_id)
            if child is None:
                context.log(
                    LogLevel.WARNING,
                    f"Next step not found: {next_id}",
                    step_id=step.id,
                )
                continue
            children.append(child)

        if not children:
            return True

        path = path + [step.id]
        reached_end = False
        for child in children:
            if await self._walk(playbook, child, context, path):
                reached_end = True
        return reached_end

    @staticmethod
    def _failure_message(context: ExecutionContext) -> str:
        failed = [
            result
            for result in context.step_results.values()
            if result.status == ExecutionStatus.FAILED
        ]
        if not failed:
            return "No execution path completed"
        last = failed[-1]
        return (
            f"No execution path completed; last failure at step "
            f"'{last.step_id}': {last.error}"
        )
