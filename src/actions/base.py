"""Base Action class and the action collaborator contract."""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Awaitable, Dict, Optional, Protocol, Union

from pydantic import BaseModel, Field


class ActionStatus(str, Enum):
    """Status reported by an action collaborator."""

    SUCCESS = "success"
    FAILURE = "failure"


class ActionOutcome(BaseModel):
    """What an action collaborator declares about one invocation."""

    status: ActionStatus = ActionStatus.SUCCESS
    output: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == ActionStatus.SUCCESS


OutcomeLike = Union[ActionOutcome, Dict[str, Any]]


class ActionHandler(Protocol):
    """
    The engine's view of the outside world.

    Called for action, integration and notification steps with the step
    type, the rendered step configuration and a copy of the current
    variables. May be a plain function or a coroutine function, and may
    return an ActionOutcome or a mapping with the same keys.
    """

    def __call__(
        self, step_type: str, config: Dict[str, Any], variables: Dict[str, Any]
    ) -> Union[OutcomeLike, Awaitable[OutcomeLike]]: ...


_SIMULATED_OUTPUT_KEYS = {
    "action": "action_executed",
    "integration": "integration_executed",
    "notification": "notification_sent",
}


def simulate_action(
    step_type: str, config: Dict[str, Any], variables: Dict[str, Any]
) -> ActionOutcome:
    """Collaborator used when none is supplied: reports success, does nothing."""
    key = _SIMULATED_OUTPUT_KEYS.get(step_type, f"{step_type}_executed")
    return ActionOutcome(output={key: True})


class Action(ABC):
    """
    Base class for actions invoked by playbook steps.

    An Action performs one side effect (block an IP, open a ticket, send a
    message). Actions are registered in an ActionRegistry which the engine
    uses as its action collaborator.

    Example:
        class BlockIp(Action):
            name = "block_ip"
            version = "1.0.0"
            description = "Block an address on the perimeter firewall"

            async def execute(self, config, variables):
                await firewall.block(config["ip"])
                return {"blocked": config["ip"]}
    """

    name: str = "base_action"
    version: str = "0.0.0"
    description: str = ""

    @abstractmethod
    async def execute(
        self, config: Dict[str, Any], variables: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Perform the action.

        Args:
            config: Rendered step configuration
            variables: Read-only copy of the run's variables

        Returns:
            Dictionary of output values
        """
        pass

    async def run(
        self, config: Dict[str, Any], variables: Dict[str, Any]
    ) -> ActionOutcome:
        """
        Run the action and wrap its result in an ActionOutcome.

        execute() may return an ActionOutcome itself to report a failure
        without raising.
        """
        result = await self.execute(config, variables)
        if isinstance(result, ActionOutcome):
            return result
        return ActionOutcome(output=dict(result or {}))

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} name='{self.name}' version='{self.version}'>"
        )
