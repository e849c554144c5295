"""PlaybookValidator - validates playbook definitions before execution."""

import argparse
import re
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Set

from .conditions import ConditionEvaluator
from .loader import PlaybookLoader
from .models import (
    ConditionStep,
    InputStep,
    Playbook,
    PlaybookStatus,
    Step,
    StepType,
    UnknownStep,
)

_ACTION_TYPES = (StepType.ACTION, StepType.INTEGRATION, StepType.NOTIFICATION)

# Variables every run defines before the first step executes.
_BOOKKEEPING_VARS = {"playbook_name", "execution_start_time", "last_step_result"}


class ValidationLevel(Enum):
    """Validation message severity levels."""

    ERROR = "ERROR"
    WARNING = "WARNING"
    INFO = "INFO"
    SUCCESS = "SUCCESS"


@dataclass
class ValidationMessage:
    """A validation message with level and context."""

    level: ValidationLevel
    message: str
    step_id: Optional[str] = None
    field: Optional[str] = None

    def format(self, color: bool = True) -> str:
        """Format the message, optionally with ANSI color codes."""
        prefix = f"[{self.level.value}]"
        if self.step_id:
            prefix += f" Step '{self.step_id}'"
        if self.field:
            prefix += f" ({self.field})"
        text = f"{prefix}: {self.message}"

        if not color:
            return text

        colors = {
            ValidationLevel.ERROR: "\033[91m",  # Red
            ValidationLevel.WARNING: "\033[93m",  # Yellow
            ValidationLevel.INFO: "\033[94m",  # Blue
            ValidationLevel.SUCCESS: "\033[92m",  # Green
        }
        return f"{colors.get(self.level, '')}{text}\033[0m"

    def __str__(self) -> str:
        return self.format(color=True)


def continuation_ids(step: Step) -> List[str]:
    """Ids a successful step can continue to, as the engine would follow them."""
    if isinstance(step, ConditionStep) and step.config.has_explicit_paths:
        return [step.config.true_path, step.config.false_path]
    return list(step.next_steps)


class PlaybookValidator:
    """
    Validate playbook definitions before execution.

    Checks:
    - Metadata completeness
    - Entry trigger presence
    - Duplicate step ids and unknown step types
    - Dangling successor references and unreachable steps
    - Cycles
    - Condition configuration and syntax
    - Action registration (optional)
    - Template variable references
    """

    def __init__(
        self,
        action_registry: Optional[Any] = None,
        evaluator: Optional[ConditionEvaluator] = None,
    ) -> None:
        """
        Initialize validator.

        Args:
            action_registry: Optional action registry to validate against
                (anything supporting `name in registry`)
            evaluator: ConditionEvaluator used for syntax checks
        """
        self.action_registry = action_registry
        self.evaluator = evaluator or ConditionEvaluator()
        self.messages: List[ValidationMessage] = []

    def validate(self, playbook: Playbook) -> bool:
        """
        Validate a playbook.

        Args:
            playbook: The playbook to validate

        Returns:
            True if valid (no errors), False otherwise
        """
        self.messages = []

        self._validate_metadata(playbook)
        self._validate_triggers(playbook)
        self._validate_step_ids(playbook)
        self._validate_references(playbook)
        self._validate_reachability(playbook)
        self._validate_cycles(playbook)
        self._validate_conditions(playbook)
        self._validate_actions(playbook)
        self._validate_variables(playbook)

        has_errors = any(m.level == ValidationLevel.ERROR for m in self.messages)

        if not has_errors and not self.messages:
            self.messages.append(
                ValidationMessage(
                    level=ValidationLevel.SUCCESS,
                    message="Playbook validation passed",
                )
            )

        return not has_errors

    def _add(
        self,
        level: ValidationLevel,
        message: str,
        step_id: Optional[str] = None,
        field: Optional[str] = None,
    ) -> None:
        self.messages.append(ValidationMessage(level, message, step_id, field))

    def _validate_metadata(self, playbook: Playbook) -> None:
        """Validate playbook metadata."""
        if not playbook.name.strip():
            self._add(ValidationLevel.ERROR, "Playbook name is required", field="name")

        if not playbook.description or not playbook.description.strip():
            self._add(
                ValidationLevel.WARNING,
                "Playbook description is missing",
                field="description",
            )

        if playbook.status in (PlaybookStatus.DISABLED, PlaybookStatus.ARCHIVED):
            self._add(
                ValidationLevel.INFO,
                f"Playbook is {playbook.status.value}",
                field="status",
            )

    def _validate_triggers(self, playbook: Playbook) -> None:
        triggers = playbook.trigger_steps()
        if not triggers:
            self._add(ValidationLevel.ERROR, "Playbook has no trigger step")
        elif len(triggers) > 1:
            self._add(
                ValidationLevel.WARNING,
                f"Playbook has {len(triggers)} trigger steps; only "
                f"'{triggers[0].id}' is used as the entry step",
            )

    def _validate_step_ids(self, playbook: Playbook) -> None:
        seen: Set[str] = set()
        for step in playbook.steps:
            if step.id in seen:
                self._add(
                    ValidationLevel.ERROR,
                    "Duplicate step id; only the first declaration is used",
                    step_id=step.id,
                    field="id",
                )
            seen.add(step.id)

            if isinstance(step, UnknownStep):
                self._add(
                    ValidationLevel.ERROR,
                    f"Unknown step type: {step.type}",
                    step_id=step.id,
                    field="type",
                )

    def _validate_references(self, playbook: Playbook) -> None:
        """Successor ids and condition paths must name existing steps."""
        for step in playbook.steps:
            for next_id in step.next_steps:
                if playbook.get_step(next_id) is None:
                    self._add(
                        ValidationLevel.WARNING,
                        f"Next step '{next_id}' does not exist",
                        step_id=step.id,
                        field="next_steps",
                    )

            if isinstance(step, ConditionStep):
                for field, target in (
                    ("true_path", step.config.true_path),
                    ("false_path", step.config.false_path),
                ):
                    if target and playbook.get_step(target) is None:
                        self._add(
                            ValidationLevel.WARNING,
                            f"Path target '{target}' does not exist",
                            step_id=step.id,
                            field=field,
                        )
                if step.config.has_explicit_paths and step.next_steps:
                    self._add(
                        ValidationLevel.INFO,
                        "next_steps are ignored because both true and false paths are set",
                        step_id=step.id,
                        field="next_steps",
                    )
                elif step.config.true_path or step.config.false_path:
                    self._add(
                        ValidationLevel.WARNING,
                        "Only one of true_path/false_path is set; "
                        "the condition continues to next_steps instead",
                        step_id=step.id,
                        field="true_path" if step.config.true_path else "false_path",
                    )

    def _validate_reachability(self, playbook: Playbook) -> None:
        entry = playbook.entry_step()
        if entry is None:
            return

        reachable: Set[str] = set()
        stack = [entry.id]
        while stack:
            step_id = stack.pop()
            if step_id in reachable:
                continue
            step = playbook.get_step(step_id)
            if step is None:
                continue
            reachable.add(step_id)
            stack.extend(continuation_ids(step))

        for step in playbook.steps:
            if step.id not in reachable and step.type != StepType.TRIGGER:
                self._add(
                    ValidationLevel.WARNING,
                    "Step is not reachable from the entry trigger",
                    step_id=step.id,
                )

    def _validate_cycles(self, playbook: Playbook) -> None:
        """Report every back-edge found by a depth-first search."""
        done: Set[str] = set()
        reported: Set[str] = set()

        def visit(step_id: str, path: List[str]) -> None:
            if step_id in path:
                cycle = path[path.index(step_id):] + [step_id]
                key = " -> ".join(cycle)
                if key not in reported:
                    reported.add(key)
                    self._add(
                        ValidationLevel.ERROR,
                        f"Cycle detected: {key}",
                        step_id=step_id,
                    )
                return
            if step_id in done:
                return
            step = playbook.get_step(step_id)
            if step is None:
                return
            for next_id in continuation_ids(step):
                visit(next_id, path + [step_id])
            done.add(step_id)

        for step in playbook.steps:
            visit(step.id, [])

    def _validate_conditions(self, playbook: Playbook) -> None:
        """Validate condition configuration and syntax."""
        for step in playbook.steps:
            if not isinstance(step, ConditionStep):
                continue
            if not step.config.condition:
                self._add(
                    ValidationLevel.ERROR,
                    "Condition step is missing condition configuration",
                    step_id=step.id,
                    field="condition",
                )
                continue
            error = self.evaluator.check(step.config.condition)
            if error:
                self._add(
                    ValidationLevel.ERROR,
                    f"Invalid condition syntax: {error}",
                    step_id=step.id,
                    field="condition",
                )

    def _validate_actions(self, playbook: Playbook) -> None:
        """Validate action steps reference registered actions."""
        if self.action_registry is None:
            return

        for step in playbook.steps:
            if step.type not in _ACTION_TYPES:
                continue
            action = getattr(step.config, "action", None)
            if not action:
                self._add(
                    ValidationLevel.ERROR,
                    f"{step.type_name.capitalize()} step has no action configured",
                    step_id=step.id,
                    field="action",
                )
            elif action not in self.action_registry:
                self._add(
                    ValidationLevel.ERROR,
                    f"Action '{action}' is not registered",
                    step_id=step.id,
                    field="action",
                )

    def _validate_variables(self, playbook: Playbook) -> None:
        """
        Warn about template references to variables nothing defines.

        Initial variables are only known at run time, so these are warnings.
        """
        defined: Set[str] = set(_BOOKKEEPING_VARS) | set(playbook.variables)
        for step in playbook.steps:
            defined.add(f"{step.id}_result")
            if isinstance(step, InputStep):
                defined.update(step.config.variables)
                defined.update(step.config.required)

        for step in playbook.steps:
            if step.type not in _ACTION_TYPES:
                continue
            for var in sorted(self._extract_template_vars(step.config.as_dict())):
                if var not in defined:
                    self._add(
                        ValidationLevel.WARNING,
                        f"Variable '{var}' is referenced but not defined by the playbook",
                        step_id=step.id,
                        field="config",
                    )

    def _extract_template_vars(self, obj: Any) -> Set[str]:
        """Extract root variable names from {{ }} templates in an object."""
        names: Set[str] = set()

        if isinstance(obj, str):
            for match in re.findall(r"\{\{\s*([a-zA-Z_][a-zA-Z0-9_\.]*)", obj):
                names.add(match.split(".")[0])
        elif isinstance(obj, dict):
            for value in obj.values():
                names.update(self._extract_template_vars(value))
        elif isinstance(obj, list):
            for item in obj:
                names.update(self._extract_template_vars(item))

        return names

    def print_messages(self, show_info: bool = True, color: bool = True) -> None:
        """
        Print validation messages to console.

        Args:
            show_info: Whether to show INFO level messages
            color: Whether to use ANSI colors
        """
        for msg in self.messages:
            if not show_info and msg.level == ValidationLevel.INFO:
                continue
            print(msg.format(color=color))

    def get_error_count(self) -> int:
        """Get count of error messages."""
        return sum(1 for m in self.messages if m.level == ValidationLevel.ERROR)

    def get_warning_count(self) -> int:
        """Get count of warning messages."""
        return sum(1 for m in self.messages if m.level == ValidationLevel.WARNING)


def execution_plan(playbook: Playbook) -> List[str]:
    """
    Describe the order in which a run would first visit each step.

    Follows every continuation (both paths of a routed condition) without
    executing anything.
    """
    lines: List[str] = []
    entry = playbook.entry_step()
    if entry is None:
        return lines

    visited: Set[str] = set()

    def visit(step: Step, depth: int) -> None:
        indent = "   " * depth
        if step.id in visited:
            lines.append(f"{indent}-> {step.id} (already visited)")
            return
        visited.add(step.id)
        lines.append(f"{indent}[{step.type_name.upper()}] {step.display_name} ({step.id})")

        details: Dict[str, Any] = {}
        if isinstance(step, ConditionStep):
            details["condition"] = step.config.condition
            if step.config.has_explicit_paths:
                details["true"] = step.config.true_path
                details["false"] = step.config.false_path
        elif step.type in _ACTION_TYPES:
            details["action"] = getattr(step.config, "action", None)
        for key, value in details.items():
            if value is not None:
                lines.append(f"{indent}   {key}: {value}")

        for next_id in continuation_ids(step):
            child = playbook.get_step(next_id)
            if child is None:
                lines.append(f"{indent}   -> {next_id} (missing)")
            else:
                visit(child, depth + 1)

    visit(entry, 0)
    return lines


def main() -> None:
    """CLI entry point for playbook validation."""
    parser = argparse.ArgumentParser(
        description="Validate playbook YAML or JSON files before execution"
    )
    parser.add_argument("playbook", help="Path to playbook file")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show execution plan without validating",
    )
    parser.add_argument(
        "--no-color", action="store_true", help="Disable colored output"
    )
    parser.add_argument(
        "--show-info", action="store_true", help="Show INFO level messages"
    )

    args = parser.parse_args()

    try:
        loader = PlaybookLoader()
        playbook = loader.load_from_file(args.playbook)

        if args.dry_run:
            print(f"\nPlaybook: {playbook.name} v{playbook.version}")
            if playbook.description:
                print(f"Description: {playbook.description}")
            print(f"\nExecution Plan ({len(playbook.steps)} steps):\n")
            for line in execution_plan(playbook) or ["(no trigger step)"]:
                print(line)
            sys.exit(0)

        validator = PlaybookValidator()
        is_valid = validator.validate(playbook)

        validator.print_messages(show_info=args.show_info, color=not args.no_color)

        error_count = validator.get_error_count()
        warning_count = validator.get_warning_count()

        if error_count > 0 or warning_count > 0:
            print(
                f"\nValidation Summary: {error_count} error(s), {warning_count} warning(s)"
            )

        sys.exit(0 if is_valid else 1)

    except Exception as e:
        message = f"Error: {e}"
        if not args.no_color:
            message = f"\033[91m{message}\033[0m"
        print(message, file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
