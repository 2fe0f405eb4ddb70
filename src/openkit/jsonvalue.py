"""JSON value alias and typed accessors used at decode sites."""

from __future__ import annotations

import json
from typing import Any

type JSONValue = str | int | float | bool | None | list[JSONValue] | dict[str, JSONValue]
type JSONObject = dict[str, JSONValue]


def loads(raw: str | bytes) -> JSONValue:
    """Parse one JSON document. Raises ``json.JSONDecodeError`` on bad input."""
    return json.loads(raw)


def as_object(value: Any) -> JSONObject:
    match value:
        case dict():
            return value
        case _:
            return {}


def get_str(data: Any, key: str, default: str | None = None) -> str | None:
    match as_object(data).get(key):
        case str() as text:
            return text
        case _:
            return default


def get_int(data: Any, key: str) -> int | None:
    match as_object(data).get(key):
        case bool():
            return None
        case int() as number:
            return number
        case float() as number if number.is_integer():
            return int(number)
        case _:
            return None


def get_object(data: Any, key: str) -> JSONObject | None:
    match as_object(data).get(key):
        case dict() as obj:
            return obj
        case _:
            return None


def get_list(data: Any, key: str) -> list[JSONValue]:
    match as_object(data).get(key):
        case list() as items:
            return items
        case _:
            return []

