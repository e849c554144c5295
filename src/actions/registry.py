"""Action Registry - registration and lookup of actions."""

import logging
from typing import Any, Dict, List, Optional, Type

from ..playbooks.errors import ActionNotFoundError
from .base import Action, ActionOutcome

logger = logging.getLogger(__name__)


class ActionRegistry:
    """
    Registry for action classes.

    Allows registration and lookup of actions by name, and serves as the
    engine's action collaborator: a step's config["action"] selects the
    action to run.

    Example:
        registry = ActionRegistry()

        @registry.register
        class BlockIp(Action):
            name = "block_ip"
            ...

        engine = PlaybookEngine(action_handler=registry)
    """

    def __init__(self) -> None:
        self._actions: Dict[str, Type[Action]] = {}

    def register(self, action_class: Type[Action]) -> Type[Action]:
        """
        Register an action class.

        Can be used as a decorator:
            @registry.register
            class MyAction(Action):
                ...

        Or called directly:
            registry.register(MyAction)
        """
        if not isinstance(action_class, type) or not issubclass(action_class, Action):
            raise TypeError(f"{action_class} must be a subclass of Action")

        name = action_class.name
        if name in self._actions:
            raise ValueError(f"Action '{name}' is already registered")

        self._actions[name] = action_class
        return action_class

    def get(self, name: str) -> Optional[Type[Action]]:
        """Get an action class by name."""
        return self._actions.get(name)

    def get_or_raise(self, name: str) -> Type[Action]:
        """Get an action class by name, raising if not found."""
        action_class = self.get(name)
        if action_class is None:
            raise ActionNotFoundError(name, self.list_actions())
        return action_class

    def list_actions(self) -> List[str]:
        """List all registered action names."""
        return list(self._actions.keys())

    def clear(self) -> None:
        """Clear all registered actions (mainly for testing)."""
        self._actions.clear()

    async def __call__(
        self, step_type: str, config: Dict[str, Any], variables: Dict[str, Any]
    ) -> ActionOutcome:
        """Run the action named by config['action']."""
        name = config.get("action")
        if not name:
            raise ValueError(f"{step_type} step has no 'action' configured")

        action = self.get_or_raise(name)()
        logger.debug("Running action %s for %s step", name, step_type)
        return await action.run(config, variables)

    def __contains__(self, name: Any) -> bool:
        return name in self._actions

    def __len__(self) -> int:
        return len(self._actions)
