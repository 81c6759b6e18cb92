"""Prompt library - named templates loaded from YAML."""

import json
from pathlib import Path
from typing import Any

import yaml

from memex.core.logging import get_logger

logger = get_logger("llm.prompts")

DEFAULT_PROMPTS_PATH = Path(__file__).parent.parent / "configs" / "prompts.yaml"


class PromptTemplate:
    """Prompt template from YAML."""

    def __init__(self, name: str, data: dict[str, Any]):
        self.name = name
        self.template = data["template"]
        self.description = data.get("description", "")

    def render(self, **values: Any) -> str:
        try:
            return self.template.format(**values).strip()
        except KeyError as e:
            raise ValueError(f"Prompt {self.name!r} missing value {e}") from e


class PromptLibrary:
    """Load and render prompt templates."""

    def __init__(self, config_path: Path | str = DEFAULT_PROMPTS_PATH):
        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f)

        self.prompts = {
            name: PromptTemplate(name, entry) for name, entry in data["prompts"].items()
        }
        logger.debug(f"Loaded {len(self.prompts)} prompts from {config_path}")

    def get(self, name: str) -> PromptTemplate:
        template = self.prompts.get(name)
        if template is None:
            raise KeyError(f"Prompt {name!r} not in library")
        return template

    def render(self, name: str, **values: Any) -> str:
        return self.get(name).render(**values)

    def __contains__(self, name: str) -> bool:
        return name in self.prompts


def parse_json_reply(content: str) -> Any:
    """Parse JSON from an LLM reply, tolerating ```json fences."""
    content = content.strip()
    # Handle common LLM output patterns
    if content.startswith("```"):
        content = content.split("```")[1]
        if content.startswith("json"):
            content = content[4:]
    return json.loads(content)
