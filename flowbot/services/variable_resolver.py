"""
Template substitution for step configuration.

Placeholders use the ``{{name}}`` form and are resolved against the running
execution context:

- ``{{summary}}`` → ``context["summary"]``
- ``{{webhook.payload.action}}`` → nested mapping lookup
- ``{{emails.0.subject}}`` → list index lookup
- ``{{content}}`` → ``content``, else ``summary``, else ``text``, else the
  whole context as JSON
- ``{{previous_output}}`` → the whole context as JSON

Unknown placeholders stay in the text verbatim; resolution never raises.
"""

import json
import logging
import re
from typing import Any
from typing import Mapping

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z0-9_\-]+(?:\.[A-Za-z0-9_\-]+)*)\s*\}\}")

CONTENT_ALIAS = "content"
CONTENT_FALLBACKS = ("summary", "text")
PREVIOUS_OUTPUT_ALIAS = "previous_output"


class VariableResolutionError(Exception):
    """Variable resolution failed."""

    pass


def interpolate(template: Any, context: Mapping[str, Any]) -> Any:
    """Resolve placeholders in every string leaf of *template*.

    Mappings and lists are rebuilt (the input is never mutated); any other
    leaf passes through unchanged.
    """
    if isinstance(template, str):
        return interpolate_string(template, context)
    elif isinstance(template, dict):
        return {key: interpolate(value, context) for key, value in template.items()}
    elif isinstance(template, list):
        return [interpolate(item, context) for item in template]
    elif isinstance(template, tuple):
        return tuple(interpolate(item, context) for item in template)
    else:
        return template


def interpolate_string(text: str, context: Mapping[str, Any]) -> str:
    """Single pass over *text*; substituted values are not rescanned."""
    if "{{" not in text:
        return text

    def replace_var(match):
        var_path = match.group(1)
        try:
            return stringify(resolve_variable_path(var_path, context))
        except VariableResolutionError as exc:
            logger.debug(f"[Interpolator] Leaving {{{{{var_path}}}}} unresolved: {exc}")
            return match.group(0)

    return PLACEHOLDER_PATTERN.sub(replace_var, text)


def resolve_variable_path(path: str, context: Mapping[str, Any]) -> Any:
    """Resolve a dotted *path* against *context* or raise VariableResolutionError."""
    if not path:
        raise VariableResolutionError("Empty variable path")

    parts = path.split(".")
    head, remaining = parts[0], parts[1:]

    if head in context:
        current = context[head]
    elif head == CONTENT_ALIAS and not remaining:
        return content_alias(context)
    elif head == PREVIOUS_OUTPUT_ALIAS and not remaining:
        return to_json(context)
    else:
        raise VariableResolutionError(f"'{head}' not in context")

    if head == CONTENT_ALIAS and not remaining and _is_blank(current):
        return content_alias(context)

    for field in remaining:
        if isinstance(current, Mapping) and field in current:
            current = current[field]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(field)]
            except (ValueError, IndexError):
                raise VariableResolutionError(f"Invalid list access: {field}")
        else:
            raise VariableResolutionError(f"Field '{field}' not found in '{path}'")

    return current


def content_alias(context: Mapping[str, Any]) -> Any:
    """``content`` → ``summary`` → ``text`` → JSON of the whole context."""
    for key in (CONTENT_ALIAS,) + CONTENT_FALLBACKS:
        value = context.get(key)
        if not _is_blank(value):
            return value
    return to_json(context)


def stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (dict, list, tuple)):
        return to_json(value)
    if value is None:
        return ""
    return str(value)


def to_json(value: Any) -> str:
    return json.dumps(value, default=str, ensure_ascii=False)


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value == "")


__all__ = [
    "VariableResolutionError",
    "interpolate",
    "interpolate_string",
    "resolve_variable_path",
    "content_alias",
    "stringify",
    "to_json",
]
