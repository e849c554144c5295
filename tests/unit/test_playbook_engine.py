"""Unit tests for PlaybookEngine."""

from typing import Any, Dict, List

import pytest

from src.actions.base import ActionOutcome, ActionStatus
from src.playbooks.config import EngineSettings
from src.playbooks.context import ExecutionStatus, LogLevel
from src.playbooks.engine import PlaybookEngine
from src.playbooks.errors import ExecutionCancelledError
from src.playbooks.metrics import MetricsCollector, PrometheusExporter
from src.playbooks.models import Playbook


def make_playbook(steps: List[Dict[str, Any]], **extra: Any) -> Playbook:
    """Build a playbook from designer-style step dicts."""
    return Playbook.model_validate(
        {"id": "pb-1", "name": "Test Playbook", "steps": steps, **extra}
    )


class RecordingHandler:
    """Action collaborator that records calls and fails selected actions."""

    def __init__(self, failing: tuple = (), cancelling: tuple = ()) -> None:
        self.calls: List[Dict[str, Any]] = []
        self.failing = failing
        self.cancelling = cancelling

    async def __call__(
        self, step_type: str, config: Dict[str, Any], variables: Dict[str, Any]
    ) -> ActionOutcome:
        self.calls.append({"type": step_type, "config": config, "variables": variables})
        action = config.get("action")
        if action in self.cancelling:
            raise ExecutionCancelledError("Analyst stopped the run")
        if action in self.failing:
            return ActionOutcome(status=ActionStatus.FAILURE, error=f"{action} failed")
        return ActionOutcome(output={"handled": action})


@pytest.fixture
def handler() -> RecordingHandler:
    return RecordingHandler(failing=("broken",), cancelling=("stop",))


@pytest.fixture
def engine(handler: RecordingHandler) -> PlaybookEngine:
    """Create a PlaybookEngine with a recording collaborator."""
    return PlaybookEngine(action_handler=handler)


class TestLinearExecution:
    """Test suite for simple chains."""

    @pytest.mark.asyncio
    async def test_linear_chain_records_every_step_in_order(
        self, engine: PlaybookEngine
    ) -> None:
        """Test a linear chain yields one result per step in visiting order."""
        playbook = make_playbook(
            [
                {"id": "t1", "type": "trigger", "nextSteps": ["a1"]},
                {"id": "a1", "type": "action", "config": {"action": "enrich"}, "nextSteps": ["n1"]},
                {"id": "n1", "type": "notification", "config": {"action": "notify"}},
            ]
        )

        result = await engine.execute(playbook)

        assert result.status == ExecutionStatus.COMPLETED
        assert list(result.step_results) == ["t1", "a1", "n1"]
        assert all(
            r.status == ExecutionStatus.COMPLETED for r in result.step_results.values()
        )
        assert result.error is None

    @pytest.mark.asyncio
    async def test_trigger_output(self, engine: PlaybookEngine) -> None:
        """Test the trigger step marks the entry as reached."""
        playbook = make_playbook([{"id": "t1", "type": "trigger"}])

        result = await engine.execute(playbook)

        assert result.step_results["t1"].output == {"triggered": True}
        assert result.status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_action_output_merges_config_and_declared_output(
        self, engine: PlaybookEngine
    ) -> None:
        """Test declared collaborator output is merged over the configuration."""
        playbook = make_playbook(
            [
                {"id": "t1", "type": "trigger", "nextSteps": ["a1"]},
                {"id": "a1", "type": "action", "config": {"action": "enrich", "x": 1, "handled": "old"}},
            ]
        )

        result = await engine.execute(playbook)

        assert result.step_results["a1"].output == {
            "action": "enrich",
            "x": 1,
            "handled": "enrich",
        }

    @pytest.mark.asyncio
    async def test_step_outputs_are_exposed_as_variables(
        self, engine: PlaybookEngine
    ) -> None:
        """Test <id>_result and last_step_result are set after each step."""
        playbook = make_playbook(
            [
                {"id": "t1", "type": "trigger", "nextSteps": ["a1"]},
                {"id": "a1", "type": "action", "config": {"action": "enrich"}},
            ]
        )

        result = await engine.execute(playbook)

        assert result.variables["a1_result"]["handled"] == "enrich"
        assert result.variables["last_step_result"] == result.variables["a1_result"]
        assert result.variables["t1_result"] == {"triggered": True}

    @pytest.mark.asyncio
    async def test_templates_rendered_from_previous_outputs(
        self, engine: PlaybookEngine, handler: RecordingHandler
    ) -> None:
        """Test action configuration is rendered against current variables."""
        playbook = make_playbook(
            [
                {"id": "t1", "type": "trigger", "nextSteps": ["a1"]},
                {"id": "a1", "type": "action", "config": {"action": "enrich"}, "nextSteps": ["a2"]},
                {
                    "id": "a2",
                    "type": "action",
                    "config": {
                        "action": "ticket",
                        "source": "{{ a1_result.handled }}",
                        "title": "Alert on {{ host }}",
                    },
                },
            ]
        )

        await engine.execute(playbook, {"host": "srv-01"})

        assert handler.calls[1]["config"]["source"] == "enrich"
        assert handler.calls[1]["config"]["title"] == "Alert on srv-01"

    @pytest.mark.asyncio
    async def test_playbook_variables_are_defaults(self, engine: PlaybookEngine) -> None:
        """Test initial variables override playbook defaults."""
        playbook = make_playbook(
            [{"id": "t1", "type": "trigger"}],
            variables={"threshold": 5, "team": "soc"},
        )

        result = await engine.execute(playbook, {"threshold": 9})

        assert result.variables["threshold"] == 9
        assert result.variables["team"] == "soc"
        assert result.variables["playbook_name"] == "Test Playbook"
        assert "execution_start_time" in result.variables


class TestConditionRouting:
    """Test suite for condition steps."""

    @pytest.mark.asyncio
    async def test_scenario_true_path_taken(self, engine: PlaybookEngine) -> None:
        """Test trigger -> action -> condition routes into the true path."""
        playbook = make_playbook(
            [
                {"id": "T1", "type": "trigger", "nextSteps": ["A1"]},
                {"id": "A1", "type": "action", "config": {"x": 1}, "nextSteps": ["C1"]},
                {
                    "id": "C1",
                    "type": "condition",
                    "config": {"condition": "x == 1", "truePath": "N1", "falsePath": "N2"},
                },
                {"id": "N1", "type": "notification", "config": {"channel": "slack"}},
                {"id": "N2", "type": "notification", "config": {"channel": "email"}},
            ]
        )

        result = await engine.execute(playbook)

        assert result.status == ExecutionStatus.COMPLETED
        for step_id in ("T1", "A1", "C1", "N1"):
            assert result.step_results[step_id].status == ExecutionStatus.COMPLETED
        assert "N2" not in result.step_results
        assert result.step_results["C1"].output["path_taken"] == "N1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "condition,expected,skipped",
        [("true", "yes", "no"), ("false", "no", "yes")],
    )
    async def test_literal_conditions_select_path(
        self, engine: PlaybookEngine, condition: str, expected: str, skipped: str
    ) -> None:
        """Test literal true/false always route to the mapped path."""
        playbook = make_playbook(
            [
                {"id": "t", "type": "trigger", "nextSteps": ["c"]},
                {
                    "id": "c",
                    "type": "condition",
                    "config": {"condition": condition, "truePath": "yes", "falsePath": "no"},
                },
                {"id": "yes", "type": "action"},
                {"id": "no", "type": "action"},
            ]
        )

        result = await engine.execute(playbook)

        assert expected in result.step_results
        assert skipped not in result.step_results

    @pytest.mark.asyncio
    async def test_condition_without_paths_fans_out_to_all_successors(
        self, engine: PlaybookEngine
    ) -> None:
        """Test a condition without explicit paths continues to every successor."""
        playbook = make_playbook(
            [
                {"id": "t", "type": "trigger", "nextSteps": ["c"]},
                {"id": "c", "type": "condition", "config": {"condition": "false"}, "nextSteps": ["a", "b"]},
                {"id": "a", "type": "action"},
                {"id": "b", "type": "action"},
            ]
        )

        result = await engine.execute(playbook)

        assert list(result.step_results) == ["t", "c", "a", "b"]
        assert result.step_results["c"].output == {"condition_result": False}

    @pytest.mark.asyncio
    async def test_explicit_paths_bypass_next_steps(self, engine: PlaybookEngine) -> None:
        """Test routed conditions ignore their ordinary successor list."""
        playbook = make_playbook(
            [
                {"id": "t", "type": "trigger", "nextSteps": ["c"]},
                {
                    "id": "c",
                    "type": "condition",
                    "config": {"condition": "true", "truePath": "a", "falsePath": "b"},
                    "nextSteps": ["b"],
                },
                {"id": "a", "type": "action"},
                {"id": "b", "type": "action"},
            ]
        )

        result = await engine.execute(playbook)

        assert "a" in result.step_results
        assert "b" not in result.step_results

    @pytest.mark.asyncio
    async def test_single_path_falls_back_to_next_steps(self, engine: PlaybookEngine) -> None:
        """Test a condition with only a true path continues to its next steps."""
        playbook = make_playbook(
            [
                {"id": "t", "type": "trigger", "nextSteps": ["c"]},
                {
                    "id": "c",
                    "type": "condition",
                    "config": {"condition": "false", "truePath": "n1"},
                    "nextSteps": ["s"],
                },
                {"id": "n1", "type": "action"},
                {"id": "s", "type": "action"},
            ]
        )

        result = await engine.execute(playbook)

        assert result.status == ExecutionStatus.COMPLETED
        assert list(result.step_results) == ["t", "c", "s"]
        assert result.step_results["c"].output == {"condition_result": False}

    @pytest.mark.asyncio
    async def test_unparsable_condition_fails_closed(self, engine: PlaybookEngine) -> None:
        """Test a broken expression routes to the false path without raising."""
        playbook = make_playbook(
            [
                {"id": "t", "type": "trigger", "nextSteps": ["c"]},
                {
                    "id": "c",
                    "type": "condition",
                    "config": {"condition": "x ==== (", "truePath": "yes", "falsePath": "no"},
                },
                {"id": "yes", "type": "action"},
                {"id": "no", "type": "action"},
            ]
        )

        result = await engine.execute(playbook)

        assert result.status == ExecutionStatus.COMPLETED
        assert "no" in result.step_results
        assert "yes" not in result.step_results
        assert "condition_error" in result.step_results["c"].output
        assert any(
            entry.level == LogLevel.WARNING and entry.step_id == "c"
            for entry in result.logs
        )

    @pytest.mark.asyncio
    async def test_condition_reads_previous_step_output(
        self, engine: PlaybookEngine
    ) -> None:
        """Test conditions can reference <id>_result variables."""
        playbook = make_playbook(
            [
                {"id": "t", "type": "trigger", "nextSteps": ["a"]},
                {"id": "a", "type": "action", "config": {"action": "enrich"}, "nextSteps": ["c"]},
                {
                    "id": "c",
                    "type": "condition",
                    "config": {
                        "condition": "a_result.handled == 'enrich'",
                        "truePath": "yes",
                        "falsePath": "no",
                    },
                },
                {"id": "yes", "type": "action"},
                {"id": "no", "type": "action"},
            ]
        )

        result = await engine.execute(playbook)

        assert "yes" in result.step_results


class TestFailureHandling:
    """Test suite for step-local and run-level failures."""

    @pytest.mark.asyncio
    async def test_no_trigger_fails_without_step_results(
        self, engine: PlaybookEngine
    ) -> None:
        """Test a playbook without trigger fails before any step runs."""
        playbook = make_playbook([{"id": "a", "type": "action"}])

        result = await engine.execute(playbook)

        assert result.status == ExecutionStatus.FAILED
        assert result.step_results == {}
        assert result.error == "Playbook has no trigger step"

    @pytest.mark.asyncio
    async def test_missing_condition_fails_step_and_run(
        self, engine: PlaybookEngine
    ) -> None:
        """Test a misconfigured condition on the only path fails the run."""
        playbook = make_playbook(
            [
                {"id": "t", "type": "trigger", "nextSteps": ["c"]},
                {"id": "c", "type": "condition", "config": {}, "nextSteps": ["a"]},
                {"id": "a", "type": "action"},
            ]
        )

        result = await engine.execute(playbook)

        step = result.step_results["c"]
        assert step.status == ExecutionStatus.FAILED
        assert "Condition step is missing condition configuration" in step.error
        assert "a" not in result.step_results
        assert result.status == ExecutionStatus.FAILED
        assert "'c'" in result.error

    @pytest.mark.asyncio
    async def test_missing_condition_with_alternate_path_completes(
        self, engine: PlaybookEngine
    ) -> None:
        """Test the run completes when another branch reaches its end."""
        playbook = make_playbook(
            [
                {"id": "t", "type": "trigger", "nextSteps": ["c", "a"]},
                {"id": "c", "type": "condition", "config": {}},
                {"id": "a", "type": "action"},
            ]
        )

        result = await engine.execute(playbook)

        assert result.step_results["c"].status == ExecutionStatus.FAILED
        assert result.step_results["a"].status == ExecutionStatus.COMPLETED
        assert result.status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_collaborator_failure_stops_only_its_branch(
        self, engine: PlaybookEngine
    ) -> None:
        """Test a failed action prunes its successors but not siblings."""
        playbook = make_playbook(
            [
                {"id": "t", "type": "trigger", "nextSteps": ["bad", "good"]},
                {"id": "bad", "type": "action", "config": {"action": "broken"}, "nextSteps": ["after"]},
                {"id": "after", "type": "action"},
                {"id": "good", "type": "action", "config": {"action": "enrich"}},
            ]
        )

        result = await engine.execute(playbook)

        assert result.step_results["bad"].status == ExecutionStatus.FAILED
        assert result.step_results["bad"].error == "broken failed"
        assert "after" not in result.step_results
        assert result.step_results["good"].status == ExecutionStatus.COMPLETED
        assert result.status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_collaborator_exception_fails_step(self) -> None:
        """Test an exception raised by the collaborator is a step failure."""

        def explode(step_type: str, config: Dict[str, Any], variables: Dict[str, Any]) -> Any:
            raise RuntimeError("connector offline")

        engine = PlaybookEngine(action_handler=explode)
        playbook = make_playbook(
            [
                {"id": "t", "type": "trigger", "nextSteps": ["i"]},
                {"id": "i", "type": "integration", "config": {"integration": "edr"}},
            ]
        )

        result = await engine.execute(playbook)

        assert result.step_results["i"].status == ExecutionStatus.FAILED
        assert result.step_results["i"].error == "connector offline"
        assert result.status == ExecutionStatus.FAILED

    @pytest.mark.asyncio
    async def test_unknown_step_type_fails_step(self, engine: PlaybookEngine) -> None:
        """Test an unrecognized type is a failure, not a no-op."""
        playbook = make_playbook(
            [
                {"id": "t", "type": "trigger", "nextSteps": ["x"]},
                {"id": "x", "type": "teleport", "nextSteps": ["a"]},
                {"id": "a", "type": "action"},
            ]
        )

        result = await engine.execute(playbook)

        assert result.step_results["x"].status == ExecutionStatus.FAILED
        assert result.step_results["x"].error == "Unknown step type: teleport"
        assert "a" not in result.step_results

    @pytest.mark.asyncio
    async def test_dangling_successor_is_skipped_with_warning(
        self, engine: PlaybookEngine
    ) -> None:
        """Test a successor id that does not exist is skipped."""
        playbook = make_playbook(
            [
                {"id": "t", "type": "trigger", "nextSteps": ["ghost", "a"]},
                {"id": "a", "type": "action"},
            ]
        )

        result = await engine.execute(playbook)

        assert result.status == ExecutionStatus.COMPLETED
        assert "ghost" not in result.step_results
        assert "a" in result.step_results
        assert any(
            entry.level == LogLevel.WARNING and "ghost" in entry.message
            for entry in result.logs
        )

    @pytest.mark.asyncio
    async def test_cancellation_ends_run_as_cancelled(
        self, engine: PlaybookEngine
    ) -> None:
        """Test a collaborator can cancel the whole run."""
        playbook = make_playbook(
            [
                {"id": "t", "type": "trigger", "nextSteps": ["s", "a"]},
                {"id": "s", "type": "action", "config": {"action": "stop"}},
                {"id": "a", "type": "action"},
            ]
        )

        result = await engine.execute(playbook)

        assert result.status == ExecutionStatus.CANCELLED
        assert result.error == "Analyst stopped the run"
        assert "a" not in result.step_results


class TestGraphShapes:
    """Test suite for cycles, joins and depth."""

    @pytest.mark.asyncio
    async def test_cycle_fails_run(self, engine: PlaybookEngine) -> None:
        """Test a back-edge fails the run deterministically."""
        playbook = make_playbook(
            [
                {"id": "t", "type": "trigger", "nextSteps": ["a"]},
                {"id": "a", "type": "action", "nextSteps": ["b"]},
                {"id": "b", "type": "action", "nextSteps": ["a"]},
            ]
        )

        result = await engine.execute(playbook)

        assert result.status == ExecutionStatus.FAILED
        assert result.error == "Cycle detected: a -> b -> a"
        assert list(result.step_results) == ["t", "a", "b"]

    @pytest.mark.asyncio
    async def test_join_step_executes_once(
        self, engine: PlaybookEngine, handler: RecordingHandler
    ) -> None:
        """Test a step reachable from two branches runs only once."""
        playbook = make_playbook(
            [
                {"id": "t", "type": "trigger", "nextSteps": ["a", "b"]},
                {"id": "a", "type": "action", "config": {"action": "a"}, "nextSteps": ["j"]},
                {"id": "b", "type": "action", "config": {"action": "b"}, "nextSteps": ["j"]},
                {"id": "j", "type": "action", "config": {"action": "join"}},
            ]
        )

        result = await engine.execute(playbook)

        assert result.status == ExecutionStatus.COMPLETED
        assert [c["config"]["action"] for c in handler.calls] == ["a", "join", "b"]
        assert list(result.step_results) == ["t", "a", "j", "b"]

    @pytest.mark.asyncio
    async def test_depth_guard(self, handler: RecordingHandler) -> None:
        """Test branches deeper than max_depth fail the run."""
        engine = PlaybookEngine(
            action_handler=handler, settings=EngineSettings(max_depth=3)
        )
        steps = [{"id": "t", "type": "trigger", "nextSteps": ["s0"]}]
        steps += [
            {"id": f"s{i}", "type": "action", "nextSteps": [f"s{i + 1}"]}
            for i in range(5)
        ]
        playbook = make_playbook(steps)

        result = await engine.execute(playbook)

        assert result.status == ExecutionStatus.FAILED
        assert "Maximum traversal depth 3" in result.error


class TestRunIsolation:
    """Test suite for independent runs."""

    @pytest.mark.asyncio
    async def test_runs_have_distinct_ids_and_variables(
        self, engine: PlaybookEngine
    ) -> None:
        """Test two runs of the same playbook share no state."""
        playbook = make_playbook([{"id": "t", "type": "trigger"}])

        first = await engine.execute(playbook, {"alert": "a-1"})
        second = await engine.execute(playbook, {"alert": "a-2"})

        assert first.execution_id != second.execution_id
        assert first.variables["alert"] == "a-1"
        assert second.variables["alert"] == "a-2"

    @pytest.mark.asyncio
    async def test_correlating_ids_are_kept(self, engine: PlaybookEngine) -> None:
        """Test alert and case ids are carried to the result."""
        playbook = make_playbook([{"id": "t", "type": "trigger"}])

        result = await engine.execute(playbook, alert_id="ALR-7", case_id="CASE-3")

        assert result.alert_id == "ALR-7"
        assert result.case_id == "CASE-3"

    @pytest.mark.asyncio
    async def test_simulated_collaborator_by_default(self) -> None:
        """Test the engine runs without a collaborator."""
        engine = PlaybookEngine()
        playbook = make_playbook(
            [
                {"id": "t", "type": "trigger", "nextSteps": ["a", "i", "n"]},
                {"id": "a", "type": "action"},
                {"id": "i", "type": "integration"},
                {"id": "n", "type": "notification"},
            ]
        )

        result = await engine.execute(playbook)

        assert result.step_results["a"].output["action_executed"] is True
        assert result.step_results["i"].output["integration_executed"] is True
        assert result.step_results["n"].output["notification_sent"] is True


class TestExecutionLog:
    """Test suite for the execution log."""

    @pytest.mark.asyncio
    async def test_log_brackets_each_step(self, engine: PlaybookEngine) -> None:
        """Test one entry before and one after every step."""
        playbook = make_playbook(
            [
                {"id": "t", "name": "Start", "type": "trigger", "nextSteps": ["a"]},
                {"id": "a", "name": "Enrich", "type": "action", "config": {"action": "broken"}},
            ]
        )

        result = await engine.execute(playbook)
        messages = [entry.message for entry in result.logs]

        assert messages[0] == "Started execution of playbook: Test Playbook"
        assert "Executing step: Start" in messages
        assert "Completed step: Start" in messages
        assert "Executing step: Enrich" in messages
        assert "Error executing step Enrich: broken failed" in messages
        assert messages[-1] == "Failed execution of playbook: Test Playbook"

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, handler: RecordingHandler) -> None:
        """Test run and step metrics are collected."""
        metrics = MetricsCollector()
        engine = PlaybookEngine(action_handler=handler, metrics=metrics)
        playbook = make_playbook(
            [
                {"id": "t", "type": "trigger", "nextSteps": ["c"]},
                {"id": "c", "type": "condition", "config": {"condition": "1 < 2"}},
            ]
        )

        await engine.execute(playbook)

        assert metrics.get_counter("playbook_executions_total", {"status": "completed"}) == 1
        assert metrics.get_counter("step_executions_total") == 2
        assert metrics.get_counter("condition_evaluations_total", {"result": "true"}) == 1
        assert metrics.get_histogram_stats("playbook_duration_seconds")["count"] == 1

    @pytest.mark.asyncio
    async def test_metrics_keep_playbook_id_with_comma(self, handler: RecordingHandler) -> None:
        """Test a playbook id containing a comma is counted and exported intact."""
        metrics = MetricsCollector()
        engine = PlaybookEngine(action_handler=handler, metrics=metrics)
        playbook = make_playbook(
            [{"id": "t", "type": "trigger"}], id="phishing,v2"
        )

        await engine.execute(playbook)

        assert metrics.get_counter("playbook_executions_total", {"playbook": "phishing,v2"}) == 1
        assert (
            'playbook_executions_total{playbook="phishing,v2",status="completed"} 1.0'
            in PrometheusExporter(metrics).export()
        )
