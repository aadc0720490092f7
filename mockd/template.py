#!/usr/bin/python3
# -*- coding: utf-8 -*-

"""
Placeholder rendering for mocked responses.

Templates use ``${name}`` placeholders. They are rewritten into
``str.format`` replacement fields and bound against the request context:

    >>> render("hello ${name}", {"name": "world"}).text
    'hello world'

Rendering never raises. On failure the untouched template is returned
together with the exception, so a broken template degrades the response
instead of failing it.
"""

from dataclasses import dataclass
import datetime
import json
import re
import string
from typing import Any, Mapping, NamedTuple, Optional, Sequence, Tuple, Union

__all__ = [
    "Rendered",
    "ScalarBody",
    "StructuredBody",
    "Body",
    "render",
    "render_body",
    "canonical_json",
]

PLACEHOLDER_EXPR = re.compile(r"\$\{([^${}]+)\}")


class Rendered(NamedTuple):
    text: str
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def as_text(value: Any) -> Any:
    """JSON spelling for values that came out of a decoded request body"""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    return value


class ContextFormatter(string.Formatter):
    """str.format against a request context.

    Unknown names render as an empty string, dotted names walk into
    nested mappings and lists (``${location.city}``, ``${tags.0}``).
    """

    def get_field(
        self, field_name: str, args: Sequence[Any], kwargs: Mapping[str, Any]
    ) -> Tuple[Any, str]:
        value: Any = kwargs
        for part in field_name.strip().split("."):
            if isinstance(value, Mapping) and part in value:
                value = value[part]
            elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
                value = value[int(part)]
            else:
                return None, field_name
        return value, field_name

    def convert_field(self, value: Any, conversion: Optional[str]) -> Any:
        if conversion is not None:
            raise ValueError(f"conversion !{conversion} is not supported")
        return value

    def format_field(self, value: Any, format_spec: str) -> str:
        return super().format_field(as_text(value), format_spec)


formatter = ContextFormatter()


def to_format_string(template: str) -> str:
    """Escape literal braces and turn ${name} into {name}"""
    parts = []
    pos = 0
    for m in PLACEHOLDER_EXPR.finditer(template):
        parts.append(template[pos : m.start()].replace("{", "{{").replace("}", "}}"))
        parts.append("{" + m.group(1) + "}")
        pos = m.end()
    parts.append(template[pos:].replace("{", "{{").replace("}", "}}"))
    return "".join(parts)


def render(template: str, context: Mapping[str, Any]) -> Rendered:
    if "{" not in template or "}" not in template:
        return Rendered(template)

    try:
        return Rendered(formatter.vformat(to_format_string(template), (), context))
    except Exception as e:
        return Rendered(template, e)


def key_as_str(key: Any) -> str:
    if isinstance(key, str):
        return key
    if isinstance(key, bool):
        return "true" if key else "false"
    if key is None:
        return "null"
    if isinstance(key, datetime.date):
        return key.isoformat()
    return str(key)


def normalize_keys(value: Any) -> Any:
    """YAML allows non-string mapping keys, JSON does not"""
    if isinstance(value, Mapping):
        return {key_as_str(k): normalize_keys(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [normalize_keys(v) for v in value]
    if isinstance(value, datetime.date):
        return value.isoformat()
    return value


def canonical_json(value: Any) -> str:
    """Compact JSON with string keys in lexicographic order.

    Raises TypeError or ValueError for values JSON cannot express."""
    return json.dumps(
        normalize_keys(value),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
    )


@dataclass(frozen=True)
class ScalarBody:
    text: str = ""


@dataclass(frozen=True)
class StructuredBody:
    value: Any
    text: str

    @classmethod
    def from_value(cls, value: Any) -> "StructuredBody":
        return cls(value=value, text=canonical_json(value))


Body = Union[ScalarBody, StructuredBody]


def render_body(body: Body, context: Mapping[str, Any]) -> Rendered:
    if isinstance(body, StructuredBody):
        # placeholders can only live in string leaves of the serialized value
        return render(body.text, context)
    elif isinstance(body, ScalarBody):
        return render(body.text, context)
    else:
        raise TypeError(f"Unsupported body type {type(body).__name__}")
