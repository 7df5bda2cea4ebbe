"""Prompt rendering for the development agent.

Prompts are Jinja2 templates shipped in ``epic_autopilot/prompts/templates``
and rendered in a sandboxed environment with ``StrictUndefined`` so a
missing variable fails the run instead of sending a half-filled prompt.

Example:
    >>> render_prompt("develop.md.j2", item_id="7A", base_branch="main")
"""

from pathlib import Path
from typing import Any

from jinja2 import FileSystemLoader, StrictUndefined
from jinja2.sandbox import SandboxedEnvironment

TEMPLATE_DIR = Path(__file__).parent / "templates"

_env = SandboxedEnvironment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    undefined=StrictUndefined,
    autoescape=False,
    trim_blocks=True,
    lstrip_blocks=True,
    keep_trailing_newline=True,
)


def render_prompt(template_name: str, **context: Any) -> str:
    """Render a prompt template with the given variables."""
    return _env.get_template(template_name).render(**context)


__all__ = ["TEMPLATE_DIR", "render_prompt"]
