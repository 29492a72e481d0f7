"""Cache-key templates.

A template is a string in which ``:field-name`` placeholders are replaced by
the string form of the matching context field::

    >>> render("mysite/:surname/:name", {"name": "John", "surname": "Doe"})
    'mysite/Doe/John'

Field names are lower-case letters, digits and dashes. A colon followed by
anything that is not an identifier character is left alone, so
``"https://example.com/:id"`` keeps its scheme separator. Substitution is
literal: values are not escaped and rendered values are never re-scanned for
placeholders.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from functools import lru_cache
from typing import Any

from arbor.common.exceptions import MalformedTemplateError, MissingFieldError

_PLACEHOLDER_RE = re.compile(r":([A-Za-z0-9_-]+)")
_FIELD_NAME_RE = re.compile(r"[a-z0-9-]+")


@lru_cache(maxsize=512)
def _compile(template: str) -> tuple[tuple[str, str | None], ...]:
    """Split a template into (literal, field) pairs.

    The final pair has ``None`` as its field. Raises MalformedTemplateError
    on the first invalid placeholder.
    """
    parts: list[tuple[str, str | None]] = []
    position = 0
    for match in _PLACEHOLDER_RE.finditer(template):
        name = match.group(1)
        if not _FIELD_NAME_RE.fullmatch(name):
            raise MalformedTemplateError(template, match.group(0))
        parts.append((template[position : match.start()], name))
        position = match.end()
    parts.append((template[position:], None))
    return tuple(parts)


def placeholders(template: str) -> list[str]:
    """Return the field names referenced by a template, in order."""
    return [field for _, field in _compile(template) if field is not None]


def _lookup(context: Mapping[str, Any], template: str, field: str) -> Any:
    if field in context:
        return context[field]
    # Python-side contexts usually spell case-name as case_name
    alias = field.replace("-", "_")
    if alias != field and alias in context:
        return context[alias]
    raise MissingFieldError(template, field)


def render(template: str, context: Mapping[str, Any]) -> str:
    """Render a cache key from a template and a context.

    Args:
        template: Template string with ``:field-name`` placeholders.
        context: Mapping providing the field values.

    Returns:
        The rendered key.

    Raises:
        MissingFieldError: If a placeholder names a field absent from
            the context.
        MalformedTemplateError: If a placeholder is not a valid field name.
    """
    out: list[str] = []
    for literal, field in _compile(template):
        out.append(literal)
        if field is not None:
            out.append(str(_lookup(context, template, field)))
    return "".join(out)
