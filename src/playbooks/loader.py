"""PlaybookLoader - loads playbook definitions from YAML or JSON."""

import json
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from jinja2 import Environment, StrictUndefined, TemplateSyntaxError, UndefinedError
from pydantic import ValidationError

from .models import Playbook


class PlaybookLoadError(Exception):
    """Raised when a playbook cannot be loaded or validated."""

    pass


class PlaybookLoader:
    """
    Loads playbook definitions from YAML or JSON files.

    The loader handles:
    - YAML and JSON parsing (designer exports use camelCase keys such as
      nextSteps and truePath, which are accepted as is)
    - Optional load-time substitution of ${ var } placeholders
    - Pydantic validation of the playbook structure

    Runtime placeholders written as {{ var }} are left untouched; they are
    rendered against the run's variables when a step executes.

    Example:
        loader = PlaybookLoader()
        playbook = loader.load_from_file("playbooks/phishing_response.yaml")

        # With load-time variables
        playbook = loader.load_from_file(
            "playbooks/template.yaml",
            variables={"soc_channel": "#soc-alerts"}
        )
    """

    def __init__(self) -> None:
        """Initialize the PlaybookLoader with a ${ }-delimited Jinja2 environment."""
        self._jinja_env = Environment(
            autoescape=False,
            variable_start_string="${",
            variable_end_string="}",
            block_start_string="${%",
            block_end_string="%}",
            comment_start_string="${#",
            comment_end_string="#}",
            undefined=StrictUndefined,
            keep_trailing_newline=True,
        )

    def load_from_file(
        self, file_path: Union[str, Path], variables: Optional[Dict[str, Any]] = None
    ) -> Playbook:
        """
        Load a playbook from a YAML or JSON file.

        Args:
            file_path: Path to the file
            variables: Optional load-time variables to substitute

        Returns:
            Validated Playbook instance

        Raises:
            PlaybookLoadError: If file cannot be read, parsed, or validated
        """
        file_path = Path(file_path)

        if not file_path.exists():
            raise PlaybookLoadError(f"Playbook file not found: {file_path}")

        if not file_path.is_file():
            raise PlaybookLoadError(f"Path is not a file: {file_path}")

        try:
            content = file_path.read_text(encoding="utf-8")
        except OSError as e:
            raise PlaybookLoadError(f"Failed to read file {file_path}: {e}") from e

        return self.load_from_string(content, variables)

    def load_from_string(
        self, content: str, variables: Optional[Dict[str, Any]] = None
    ) -> Playbook:
        """
        Load a playbook from a YAML or JSON string.

        Args:
            content: YAML or JSON document
            variables: Optional load-time variables to substitute

        Returns:
            Validated Playbook instance

        Raises:
            PlaybookLoadError: If the content cannot be parsed or validated
        """
        if variables:
            content = self._process_template(content, variables)

        data = self._parse(content)
        if not isinstance(data, dict):
            raise PlaybookLoadError("Playbook document must be a mapping")

        return self.load_from_dict(data)

    def load_from_dict(self, data: Dict[str, Any]) -> Playbook:
        """
        Load a playbook from a dictionary.

        Args:
            data: Dictionary representation of playbook

        Returns:
            Validated Playbook instance

        Raises:
            PlaybookLoadError: If validation fails
        """
        steps = data.get("steps", [])
        if not isinstance(steps, list):
            raise PlaybookLoadError("'steps' must be a list")

        for i, step in enumerate(steps):
            if not isinstance(step, dict):
                raise PlaybookLoadError(f"Step {i} must be a dictionary")
            if "type" not in step:
                raise PlaybookLoadError(f"Step {i} must have a 'type' field")

        try:
            return Playbook.model_validate(data)
        except ValidationError as e:
            problems = [
                f"{'.'.join(str(loc) for loc in error['loc'])}: {error['msg']}"
                for error in e.errors()
            ]
            raise PlaybookLoadError(
                f"Playbook validation failed: {'; '.join(problems)}"
            ) from e

    @staticmethod
    def _parse(content: str) -> Any:
        """Parse JSON when the document looks like JSON, YAML otherwise."""
        if content.lstrip().startswith("{"):
            try:
                return json.loads(content)
            except json.JSONDecodeError:
                pass  # flow-style YAML

        try:
            return yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise PlaybookLoadError(f"Failed to parse playbook: {e}") from e

    def _process_template(self, content: str, variables: Dict[str, Any]) -> str:
        """
        Substitute ${ var } placeholders.

        Args:
            content: Document text
            variables: Variables to substitute

        Returns:
            Processed content with variables substituted

        Raises:
            PlaybookLoadError: If template processing fails
        """
        try:
            template = self._jinja_env.from_string(content)
            return template.render(**variables)
        except TemplateSyntaxError as e:
            raise PlaybookLoadError(f"Template syntax error: {e}") from e
        except UndefinedError as e:
            raise PlaybookLoadError(f"Undefined load-time variable: {e}") from e
