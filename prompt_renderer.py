# prompt_renderer.py
"""Utilities for rendering generation prompts using Jinja2 templates."""

import json
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined
from pydantic import BaseModel

PROMPTS_PATH = Path(__file__).parent / "prompts"
_env = Environment(
    loader=FileSystemLoader(PROMPTS_PATH),
    autoescape=False,
    trim_blocks=True,
    lstrip_blocks=True,
    undefined=StrictUndefined,
)


def _default_json_serializer(value: Any) -> Any:
    """Serialize pydantic models for JSON output."""
    if isinstance(value, BaseModel):
        return value.model_dump(exclude_none=True, by_alias=True)
    raise TypeError(
        f"Object of type {value.__class__.__name__} is not JSON serializable"
    )


def _tojson(value: Any) -> str:
    """Compact JSON filter that supports pydantic models."""
    return json.dumps(
        value,
        default=_default_json_serializer,
        ensure_ascii=False,
        separators=(",", ":"),
    )


_env.filters["tojson"] = _tojson


def render_prompt(template_name: str, context: dict[str, Any]) -> str:
    """Render a Jinja2 template from the prompts directory."""
    template = _env.get_template(template_name)
    return template.render(**context).strip()
