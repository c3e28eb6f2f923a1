"""
mail/templates.py -- Jinja2 rendering for email bodies.

Templates live in mail/templates/. Autoescaping is on for .html files so a
user-supplied name cannot inject markup into the message.
"""

from __future__ import annotations

from pathlib import Path

from jinja2 import Environment, FileSystemLoader, select_autoescape

_TEMPLATE_DIR = Path(__file__).parent / "templates"

_env = Environment(
    loader=FileSystemLoader(str(_TEMPLATE_DIR)),
    autoescape=select_autoescape(["html"]),
)


def render_template(template_name: str, /, **context) -> str:
    """Render a template from mail/templates/ with the given variables.

    template_name is positional-only so the templates can use `name` for the
    recipient.
    """
    return _env.get_template(template_name).render(**context)
