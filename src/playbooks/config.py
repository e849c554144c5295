"""Engine settings and logging setup."""

import logging
import sys
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Runtime limits for playbook execution, read from PLAYBOOK_* env vars."""

    max_depth: int = Field(
        default=256, ge=1, description="Deepest branch the traversal will follow"
    )
    max_condition_length: int = Field(
        default=1000, ge=1, description="Longest condition expression accepted"
    )
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="PLAYBOOK_", env_file=".env", extra="ignore"
    )


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    """Process-wide settings, loaded once."""
    return EngineSettings()


def setup_logging(level: Optional[str] = None) -> None:
    """Send package logs to stdout."""
    logger = logging.getLogger("src")
    logger.setLevel((level or get_settings().log_level).upper())
    if logger.handlers:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    )
    logger.addHandler(handler)
