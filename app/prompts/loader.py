"""
Prompt loader for the versioned YAML prompt tree.

    v1/
    ├── shared/      # Literary system prompt
    └── storybook/   # Chapter context, instructions and summary prompts

Usage:
    from app.prompts.loader import render_prompt

    rendered = render_prompt("chapter_context", chapter_number=2, hero_name="Vega", ...)
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from jinja2 import Environment, StrictUndefined

logger = logging.getLogger(__name__)

_PROMPTS_DIR = Path(__file__).resolve().parent
_VERSION = "v1"

_DOMAIN_DIRS = [
    "shared",
    "storybook",
]


@lru_cache(maxsize=1)
def _jinja_env() -> Environment:
    return Environment(
        undefined=StrictUndefined,
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
    )


@lru_cache(maxsize=1)
def _load_prompts() -> dict[str, Any]:
    """Load every prompt under the current version, validating Jinja2 syntax."""
    prompts: dict[str, Any] = {}
    version_dir = _PROMPTS_DIR / _VERSION

    for domain in _DOMAIN_DIRS:
        domain_dir = version_dir / domain
        if not domain_dir.exists():
            continue

        for yaml_file in sorted(domain_dir.glob("*.yaml")):
            with yaml_file.open("r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
            if not isinstance(data, dict):
                raise ValueError(f"{yaml_file} must be a mapping at top level")

            for key, value in data.items():
                template = value.get("template") if isinstance(value, dict) else value
                if not isinstance(template, str):
                    continue
                try:
                    _jinja_env().parse(template)
                except Exception as e:  # TemplateSyntaxError or others
                    raise ValueError(f"Invalid Jinja2 template in {yaml_file}:{key}: {e}") from e

            prompts.update(data)

    return prompts


def get_prompt(name: str) -> str:
    """
    Get a prompt template by name.

    Raises:
        KeyError: If prompt not found or not a string
    """
    value = _load_prompts().get(name)
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and "template" in value:
        return value["template"]
    raise KeyError(f"Prompt '{name}' not found or not a string")


def get_required_variables(name: str) -> list[str]:
    value = _load_prompts().get(name)
    if isinstance(value, dict):
        return list(value.get("required_variables") or [])
    return []


def render_prompt(name: str, **context: Any) -> str:
    """
    Render a prompt template with the given context.

    Raises:
        ValueError: If a declared required variable is missing
    """
    missing = [v for v in get_required_variables(name) if v not in context]
    if missing:
        raise ValueError(f"Missing required variables for '{name}': {missing}")
    template = get_prompt(name)
    return _jinja_env().from_string(template).render(**context).strip()


def list_prompts() -> list[str]:
    return list(_load_prompts().keys())


def clear_cache() -> None:
    """Clear cached prompts (useful for hot-reload scenarios)."""
    _load_prompts.cache_clear()
    _jinja_env.cache_clear()
