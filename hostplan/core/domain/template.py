"""
L1 Domain — Template rendering and secret redaction (pure).

Plans reference their variable bindings with ``{name}`` tokens.
Rendering is plain string replacement of *bound* names only, so
braces that belong to the rendered file format (nginx blocks,
compose healthchecks, JSON) pass through untouched.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")

REDACTED = "***"


def render_template(template: str, variables: Mapping[str, str]) -> str:
    """Substitute ``{var}`` placeholders with bound values.

    One pass over the template, no Jinja, no escaping. Tokens whose
    name is not bound are left as-is, and substituted values are never
    rendered again.
    """

    def _bound(match: re.Match[str]) -> str:
        name = match[1]
        return str(variables[name]) if name in variables else match[0]

    return _PLACEHOLDER.sub(_bound, template)


def render_value(value, variables: Mapping[str, str]):
    """Render strings inside a param value (str, list or dict)."""
    if isinstance(value, str):
        return render_template(value, variables)
    if isinstance(value, list):
        return [render_value(v, variables) for v in value]
    if isinstance(value, dict):
        return {k: render_value(v, variables) for k, v in value.items()}
    return value


def placeholders(template: str) -> set[str]:
    """Names referenced with ``{name}`` in a template."""
    return set(_PLACEHOLDER.findall(template))


def redact(text: str, secret_values: Iterable[str]) -> str:
    """Mask every occurrence of a secret value in ``text``."""
    for value in secret_values:
        if value:
            text = text.replace(value, REDACTED)
    return text
