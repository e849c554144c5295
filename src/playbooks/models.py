"""Pydantic models describing a playbook's step graph."""

from enum import Enum
from typing import Annotated, Any, Dict, List, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    PrivateAttr,
    Tag,
    field_validator,
)


class StepType(str, Enum):
    """Type of step in a playbook."""

    TRIGGER = "trigger"
    ACTION = "action"
    CONDITION = "condition"
    INTEGRATION = "integration"
    NOTIFICATION = "notification"
    INPUT = "input"
    OUTPUT = "output"


class PlaybookStatus(str, Enum):
    """Publication status of a playbook."""

    DRAFT = "draft"
    ACTIVE = "active"
    DISABLED = "disabled"
    ARCHIVED = "archived"


class TriggerType(str, Enum):
    """How a playbook run is initiated."""

    MANUAL = "manual"
    SCHEDULED = "scheduled"
    ALERT = "alert"
    WEBHOOK = "webhook"
    EVENT = "event"


class StepConfig(BaseModel):
    """Base class for step configurations. Unknown keys are kept."""

    model_config = ConfigDict(extra="allow", frozen=True, populate_by_name=True)

    def as_dict(self) -> Dict[str, Any]:
        """Configuration as a plain dict, including extra keys."""
        return self.model_dump(exclude_none=True)


class TriggerConfig(StepConfig):
    """Configuration of a trigger step."""

    pass


class ActionConfig(StepConfig):
    """Configuration of an action step."""

    action: Optional[str] = Field(None, description="Name of the action to invoke")


class IntegrationConfig(StepConfig):
    """Configuration of an integration step."""

    integration: Optional[str] = Field(None, description="Integration identifier")
    action: Optional[str] = Field(None, description="Name of the action to invoke")


class NotificationConfig(StepConfig):
    """Configuration of a notification step."""

    action: Optional[str] = Field(None, description="Name of the action to invoke")
    channel: Optional[str] = Field(None, description="Delivery channel (email, slack, ...)")
    recipients: List[str] = Field(default_factory=list)
    message: Optional[str] = None


class ConditionConfig(StepConfig):
    """Configuration of a condition step."""

    condition: Optional[str] = Field(None, description="Boolean expression to evaluate")
    true_path: Optional[str] = Field(
        None, alias="truePath", description="Step to continue to when true"
    )
    false_path: Optional[str] = Field(
        None, alias="falsePath", description="Step to continue to when false"
    )

    @field_validator("condition", mode="before")
    @classmethod
    def coerce_literal_condition(cls, v: Any) -> Any:
        """Accept YAML/JSON scalars such as `condition: true`."""
        if isinstance(v, bool):
            return "true" if v else "false"
        if isinstance(v, (int, float)):
            return str(v)
        return v

    @property
    def has_explicit_paths(self) -> bool:
        """Whether both true and false targets are set, so routing replaces next_steps."""
        return bool(self.true_path and self.false_path)


class InputConfig(StepConfig):
    """Configuration of an input step."""

    variables: Dict[str, Any] = Field(
        default_factory=dict, description="Declared variables and their defaults"
    )
    required: List[str] = Field(
        default_factory=list, description="Variables that must be bound"
    )


class OutputConfig(StepConfig):
    """Configuration of an output step."""

    variables: List[str] = Field(
        default_factory=list, description="Variables exported as the step output"
    )


class BaseStep(BaseModel):
    """Fields shared by every step type."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = Field(..., description="Identifier, unique within the playbook")
    name: str = Field("", description="Display name of this step")
    description: Optional[str] = None
    next_steps: List[str] = Field(
        default_factory=list,
        alias="nextSteps",
        description="Successor step identifiers, in visiting order",
    )

    @property
    def display_name(self) -> str:
        """Name for logs, falling back to the identifier."""
        return self.name or self.id

    @property
    def type_name(self) -> str:
        """Step type as a plain string."""
        step_type = getattr(self, "type")
        return step_type.value if isinstance(step_type, StepType) else str(step_type)

    @field_validator("type", check_fields=False)
    @classmethod
    def validate_type(cls, v: Any) -> Any:
        """Ensure a typed step carries its own type."""
        expected = cls.model_fields["type"].default
        if isinstance(expected, StepType) and v != expected:
            raise ValueError(f"{cls.__name__} must have type='{expected.value}'")
        return v


class TriggerStep(BaseStep):
    """Entry point of a playbook."""

    type: StepType = Field(default=StepType.TRIGGER)
    config: TriggerConfig = Field(default_factory=TriggerConfig)


class ActionStep(BaseStep):
    """Invokes an external action."""

    type: StepType = Field(default=StepType.ACTION)
    config: ActionConfig = Field(default_factory=ActionConfig)


class IntegrationStep(BaseStep):
    """Invokes an external integration."""

    type: StepType = Field(default=StepType.INTEGRATION)
    config: IntegrationConfig = Field(default_factory=IntegrationConfig)


class NotificationStep(BaseStep):
    """Sends a notification through an external action."""

    type: StepType = Field(default=StepType.NOTIFICATION)
    config: NotificationConfig = Field(default_factory=NotificationConfig)


class ConditionStep(BaseStep):
    """Branches on a boolean expression over the run's variables."""

    type: StepType = Field(default=StepType.CONDITION)
    config: ConditionConfig = Field(default_factory=ConditionConfig)


class InputStep(BaseStep):
    """Declares variables the run expects, with defaults."""

    type: StepType = Field(default=StepType.INPUT)
    config: InputConfig = Field(default_factory=InputConfig)


class OutputStep(BaseStep):
    """Exports selected variables as its output."""

    type: StepType = Field(default=StepType.OUTPUT)
    config: OutputConfig = Field(default_factory=OutputConfig)


class UnknownStep(BaseStep):
    """
    A step whose type the engine does not know.

    Kept so that a playbook saved by a newer designer still loads; the
    dispatcher fails it at run time.
    """

    type: str
    config: Dict[str, Any] = Field(default_factory=dict)


def _step_kind(value: Any) -> str:
    """Discriminator: the step type, or 'unknown' for unrecognized types."""
    if isinstance(value, UnknownStep):
        return "unknown"
    if isinstance(value, dict):
        raw = value.get("type")
    else:
        raw = getattr(value, "type", None)
    try:
        return StepType(raw).value
    except ValueError:
        return "unknown"


Step = Annotated[
    Union[
        Annotated[TriggerStep, Tag("trigger")],
        Annotated[ActionStep, Tag("action")],
        Annotated[ConditionStep, Tag("condition")],
        Annotated[IntegrationStep, Tag("integration")],
        Annotated[NotificationStep, Tag("notification")],
        Annotated[InputStep, Tag("input")],
        Annotated[OutputStep, Tag("output")],
        Annotated[UnknownStep, Tag("unknown")],
    ],
    Discriminator(_step_kind),
]


class Playbook(BaseModel):
    """
    A complete playbook definition.

    A playbook is a graph of steps starting at a trigger. The model is
    read-only to the engine and performs no graph validation: dangling
    successors, orphaned steps and a missing trigger are only detected
    when a run (or the validator) reaches them.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    id: str = Field(..., description="Playbook identifier")
    name: str = Field(..., description="Display name")
    description: Optional[str] = None
    status: PlaybookStatus = Field(default=PlaybookStatus.DRAFT)
    trigger_type: TriggerType = Field(default=TriggerType.MANUAL, alias="triggerType")
    version: str = Field(default="1.0.0")
    owner: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    variables: Dict[str, Any] = Field(
        default_factory=dict, description="Default variable bindings for each run"
    )
    steps: List[Step] = Field(default_factory=list)

    _index: Dict[str, Any] = PrivateAttr(default_factory=dict)

    def model_post_init(self, __context: Any) -> None:
        # First declaration wins for duplicated ids; the validator reports them.
        for step in self.steps:
            self._index.setdefault(step.id, step)

    def get_step(self, step_id: str) -> Optional[Step]:
        """Look up a step by identifier."""
        return self._index.get(step_id)

    def successors(self, step_id: str) -> List[str]:
        """Successor identifiers of a step (empty for unknown ids)."""
        step = self.get_step(step_id)
        if step is None:
            return []
        return list(step.next_steps)

    def resolve(self, step_ids: List[str]) -> List[Step]:
        """Resolve identifiers to steps, dropping ids that do not exist."""
        return [self._index[i] for i in step_ids if i in self._index]

    def entry_step(self) -> Optional[Step]:
        """The first trigger step in declaration order."""
        for step in self.steps:
            if step.type == StepType.TRIGGER:
                return step
        return None

    def trigger_steps(self) -> List[Step]:
        """All trigger steps."""
        return [s for s in self.steps if s.type == StepType.TRIGGER]

    def __repr__(self) -> str:
        return f"<Playbook id='{self.id}' name='{self.name}' steps={len(self.steps)}>"
