"""ExecutionTracer - builds, renders and exports execution results."""

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from .context import (
    ExecutionContext,
    ExecutionStatus,
    LogEntry,
    StepResult,
    elapsed_ms,
    to_jsonable,
)


class ExecutionResult(BaseModel):
    """
    Snapshot of a finished execution.

    Fields cannot be reassigned, but step_results, variables and logs are
    ordinary containers. They are copies detached from the context: variables
    and step outputs are converted into JSON-compatible values, so editing a
    result changes neither the run nor results built from it later.
    """

    model_config = ConfigDict(frozen=True)

    execution_id: str
    playbook_id: str
    playbook_name: str = ""
    started_at: datetime
    completed_at: Optional[datetime] = None
    status: ExecutionStatus
    step_results: Dict[str, StepResult] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)
    logs: List[LogEntry] = Field(default_factory=list)
    error: Optional[str] = None
    alert_id: Optional[str] = None
    case_id: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == ExecutionStatus.COMPLETED

    @property
    def duration_ms(self) -> Optional[int]:
        """Run duration, or None if the run never finished."""
        if self.completed_at is None:
            return None
        return elapsed_ms(self.started_at, self.completed_at)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert the result to a dictionary for JSON serialization.

        Returns:
            Dictionary representation of the result
        """
        data: Dict[str, Any] = self.model_dump(mode="json")
        data["duration_ms"] = self.duration_ms
        return data

    def to_json(self, indent: Optional[int] = 2) -> str:
        """
        Export the result as JSON string.

        Args:
            indent: Number of spaces for indentation (None for compact JSON)

        Returns:
            JSON string representation of the result
        """
        return json.dumps(self.to_dict(), indent=indent)

    def save_to_file(self, filepath: str, indent: Optional[int] = 2) -> None:
        """
        Save the result to a JSON file.

        Args:
            filepath: Path to save the JSON file
            indent: Number of spaces for indentation
        """
        with open(filepath, "w", encoding="utf-8") as f:
            f.write(self.to_json(indent=indent))


class ExecutionTracer:
    """
    Utilities for working with execution results.

    Builds the ExecutionResult from a terminal context, renders the
    human-readable summary, and reloads exported results.
    """

    @staticmethod
    def build_result(
        context: ExecutionContext, playbook_name: Optional[str] = None
    ) -> ExecutionResult:
        """
        Snapshot an execution context.

        Args:
            context: The context of a finished (or abandoned) run
            playbook_name: Display name; defaults to the playbook_name variable

        Returns:
            ExecutionResult detached from the context
        """
        name = playbook_name or context.variables.get("playbook_name") or ""
        return ExecutionResult(
            execution_id=context.execution_id,
            playbook_id=context.playbook_id,
            playbook_name=str(name),
            started_at=context.started_at,
            completed_at=context.completed_at,
            status=context.status,
            step_results={
                step_id: result.model_copy(update={"output": to_jsonable(result.output)})
                for step_id, result in context.step_results.items()
            },
            variables=to_jsonable(context.variables),
            logs=[
                entry.model_copy(update={"data": to_jsonable(entry.data)})
                if entry.data is not None
                else entry
                for entry in context.logs
            ],
            error=context.error,
            alert_id=context.alert_id,
            case_id=context.case_id,
        )

    @staticmethod
    def generate_summary(result: ExecutionResult) -> str:
        """
        Render a human-readable summary of an execution.

        Args:
            result: The execution result

        Returns:
            Multi-line summary text
        """
        ended = result.completed_at or result.started_at
        duration = result.duration_ms or 0

        lines = [
            "Playbook Execution Summary",
            "----------------------------",
            f"Execution ID: {result.execution_id}",
            f"Playbook ID: {result.playbook_id}",
            f"Status: {result.status.value}",
            f"Started: {result.started_at.isoformat()}",
            f"Ended: {ended.isoformat() if result.completed_at else 'N/A'}",
            f"Duration: {duration // 1000}s {duration % 1000}ms",
            f"Steps Executed: {len(result.step_results)}",
            f"Alert ID: {result.alert_id or 'N/A'}",
            f"Case ID: {result.case_id or 'N/A'}",
        ]

        if result.error:
            lines.append(f"Error: {result.error}")

        lines.append("\nStep Results:")
        for step in result.step_results.values():
            lines.append(f"- {step.step_id}: {step.status.value} ({step.duration_ms or 0}ms)")
            if step.error:
                lines.append(f"  Error: {step.error}")

        return "\n".join(lines)

    @staticmethod
    def load_from_json(json_str: str) -> ExecutionResult:
        """
        Load an execution result from JSON string.

        Args:
            json_str: JSON produced by ExecutionResult.to_json()

        Returns:
            The reconstructed ExecutionResult
        """
        data = json.loads(json_str)
        data.pop("duration_ms", None)
        return ExecutionResult.model_validate(data)

    @staticmethod
    def load_from_file(filepath: str) -> ExecutionResult:
        """
        Load an execution result from JSON file.

        Args:
            filepath: Path to the JSON file

        Returns:
            The reconstructed ExecutionResult
        """
        with open(filepath, "r", encoding="utf-8") as f:
            return ExecutionTracer.load_from_json(f.read())
