"""Jinja2 prompt templates for container tasks."""

from pathlib import Path
from typing import Any

from jinja2 import FileSystemLoader, StrictUndefined
from jinja2.sandbox import SandboxedEnvironment

# SECURITY: Template directory is package-internal, not user-controlled
TEMPLATE_DIR = Path(__file__).parent.parent / "prompts"

ALLOWED_TEMPLATES = frozenset(
    {
        "operator_system.j2",
        "task.j2",
        "proposal.j2",
        "final_summary.j2",
    }
)


class PromptRenderer:
    """Render packaged prompt templates.

    SandboxedEnvironment prevents template code execution; StrictUndefined
    turns a missing variable into an error instead of an empty string.
    """

    def __init__(self, template_dir: Path = TEMPLATE_DIR):
        self.env = SandboxedEnvironment(
            loader=FileSystemLoader(template_dir),
            undefined=StrictUndefined,
            autoescape=False,  # Not HTML, no XSS concern
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def render(self, template_name: str, **kwargs: Any) -> str:
        if template_name not in ALLOWED_TEMPLATES:
            raise ValueError(
                f"Unknown template '{template_name}'. Allowed: {sorted(ALLOWED_TEMPLATES)}"
            )
        return self.env.get_template(template_name).render(**kwargs).strip()
