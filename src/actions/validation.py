"""Configuration validation decorator for actions."""

from functools import wraps
from typing import Any, Callable, Dict, Type, TypeVar, cast

from pydantic import BaseModel, ValidationError

from ..playbooks.errors import InvalidInputError

F = TypeVar("F", bound=Callable[..., Any])


def validate_config(schema: Type[BaseModel]) -> Callable[[F], F]:
    """
    Decorator to validate an action's step configuration against a Pydantic schema.

    Validates the configuration before the action's execute() method runs.
    Raises InvalidInputError with detailed validation errors if validation
    fails, which fails the step.

    Args:
        schema: Pydantic BaseModel class to validate against

    Returns:
        Decorated function

    Example:
        ```python
        class BlockIpConfig(BaseModel):
            ip: str
            duration_minutes: int = 60

        class BlockIp(Action):
            name = "block_ip"

            @validate_config(BlockIpConfig)
            async def execute(self, config, variables):
                # config is guaranteed to be valid here
                return {"blocked": config["ip"]}
        ```
    """

    def decorator(func: F) -> F:
        @wraps(func)
        async def wrapper(
            self: Any, config: Dict[str, Any], variables: Dict[str, Any]
        ) -> Any:
            try:
                validated = schema.model_validate(config)
            except ValidationError as e:
                raise InvalidInputError(
                    action_name=self.name,
                    schema=schema,
                    input_data=config,
                    validation_error=e,
                ) from e

            return await func(self, validated.model_dump(), variables)

        return cast(F, wrapper)

    return decorator
