"""Strict ``{{ dotted.path }}`` interpolation over JSON documents.

The expression language is path lookup only: no filters, loops or
conditionals. Every string leaf of a document is rendered independently and
non-string leaves are returned unchanged. Referencing a path that does not
exist raises ``RenderError`` instead of producing an empty string.
"""

from __future__ import annotations

import copy
import json
import re
from collections.abc import Mapping
from typing import Any

from scaffolder.errors import RenderError
from scaffolder.tasks.models import JsonObject, JsonValue

_EXPRESSION_RE = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)
_PATH_RE = re.compile(r"^[A-Za-z_$][\w$-]*(?:\.(?:[A-Za-z_$][\w$-]*|\d+))*$")
_FALSY_STRINGS = frozenset({"", "false"})


class _Missing:
    pass


_MISSING = _Missing()


def render(expression: str, context: JsonObject) -> JsonValue:
    """Render one template string against ``context``.

    A string that is exactly one ``{{ path }}`` expression evaluates to the
    referenced JSON value as-is. Otherwise every expression is substituted in
    place and the result is a string.
    """

    matches = list(_EXPRESSION_RE.finditer(expression))
    if not matches:
        _ensure_terminated(expression)
        return expression

    if len(matches) == 1 and matches[0].span() == (0, len(expression)):
        return copy.deepcopy(resolve_path(matches[0].group(1), context))

    parts: list[str] = []
    cursor = 0
    for match in matches:
        literal = expression[cursor : match.start()]
        _ensure_terminated(literal)
        parts.append(literal)
        parts.append(_stringify(resolve_path(match.group(1), context)))
        cursor = match.end()
    tail = expression[cursor:]
    _ensure_terminated(tail)
    parts.append(tail)
    return "".join(parts)


def render_value(document: JsonValue, context: JsonObject) -> JsonValue:
    """Render every string leaf of an arbitrary JSON document."""

    if isinstance(document, str):
        return render(document, context)
    if isinstance(document, Mapping):
        return {key: render_value(value, context) for key, value in document.items()}
    if isinstance(document, list):
        return [render_value(item, context) for item in document]
    return document


def resolve_path(raw_path: str, context: JsonObject) -> JsonValue:
    """Look up a dotted path, raising ``RenderError`` when any segment is undefined."""

    path = raw_path.strip()
    if not _PATH_RE.match(path):
        raise RenderError(f"Invalid template expression {{{{ {path} }}}}")

    current: Any = context
    for segment in path.split("."):
        current = _lookup(current, segment)
        if current is _MISSING:
            raise RenderError(f'"{path}" is not defined in the template context')
    return current


def is_truthy(value: JsonValue) -> bool:
    """Truthiness used for step ``if`` conditions."""

    if isinstance(value, str):
        return value.strip().lower() not in _FALSY_STRINGS
    return bool(value)


def _lookup(container: Any, segment: str) -> Any:
    if isinstance(container, Mapping):
        return container.get(segment, _MISSING)
    if isinstance(container, list) and segment.isdigit():
        index = int(segment)
        return container[index] if index < len(container) else _MISSING
    return _MISSING


def _stringify(value: JsonValue) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _ensure_terminated(literal: str) -> None:
    if "{{" in literal:
        raise RenderError(f"Unterminated template expression in {literal!r}")
