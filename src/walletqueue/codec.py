"""
Value codec for task arguments and results.

Values are stored as JSON. Types JSON cannot express are written as tagged
objects, `{"$type": <tag>, "v": <payload>}`, so decoding never has to guess:

    bigint    integers beyond the IEEE-754 safe range, payload is the digits
    calendar  recurrence calendars, payload is the calendar string
    datetime  aware or naive datetimes, payload is the ISO-8601 form
    object    a plain dict that itself contains a "$type" key

Older payloads used string suffixes instead ("123n", "CalendarInterface(...)").
They can still be read with `deserialize_value(text, legacy=True)`, which
applies those heuristics. A genuine string such as "42n" is misread in that
mode, so it is never the default.
"""

from __future__ import annotations

import json
import re
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from walletqueue.errors import SerializationError
from walletqueue.recurrence import is_calendar, parse_calendar

TYPE_TAG = "$type"
VALUE_TAG = "v"
MAX_SAFE_INTEGER = 2**53 - 1

CalendarParser = Callable[[str], Any]

_LEGACY_BIGINT = re.compile(r"^-?\d+n$")
_LEGACY_BIGINT_MAX_LENGTH = 32
_LEGACY_CALENDAR_PREFIX = "CalendarInterface("


def encode_value(value: Any, path: str = "") -> Any:
    """Convert `value` into a JSON-compatible structure, tagging special types."""
    if isinstance(value, Enum):
        return encode_value(value.value, path)
    if value is None or isinstance(value, (bool, str, float)):
        return value
    if isinstance(value, int):
        if abs(value) > MAX_SAFE_INTEGER:
            return {TYPE_TAG: "bigint", VALUE_TAG: str(value)}
        return value
    if isinstance(value, datetime):
        return {TYPE_TAG: "datetime", VALUE_TAG: value.isoformat()}
    if is_calendar(value):
        return {TYPE_TAG: "calendar", VALUE_TAG: value.to_calendar_string()}
    if isinstance(value, dict):
        encoded = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise SerializationError(f"Key {key!r} at {path or '<root>'} is not a string")
            encoded[key] = encode_value(item, f"{path}.{key}" if path else key)
        if TYPE_TAG in encoded:
            return {TYPE_TAG: "object", VALUE_TAG: encoded}
        return encoded
    if isinstance(value, (list, tuple)):
        return [
            encode_value(item, f"{path}.{index}" if path else str(index))
            for index, item in enumerate(value)
        ]
    if callable(value):
        raise SerializationError(f"Function {path or '<root>'} is not serializable")
    raise SerializationError(
        f"Value of type {type(value).__name__} at {path or '<root>'} is not serializable"
    )


def decode_value(
    value: Any,
    *,
    calendar_parser: CalendarParser = parse_calendar,
    legacy: bool = False,
) -> Any:
    """Inverse of `encode_value` for an already JSON-parsed structure."""
    if isinstance(value, list):
        return [decode_value(item, calendar_parser=calendar_parser, legacy=legacy) for item in value]
    if isinstance(value, dict):
        tag = value.get(TYPE_TAG)
        if tag is not None and set(value) == {TYPE_TAG, VALUE_TAG}:
            return _decode_tagged(tag, value[VALUE_TAG], calendar_parser, legacy)
        return {
            key: decode_value(item, calendar_parser=calendar_parser, legacy=legacy)
            for key, item in value.items()
        }
    if legacy and isinstance(value, str):
        return _decode_legacy_string(value, calendar_parser)
    return value


def _decode_tagged(tag: str, payload: Any, calendar_parser: CalendarParser, legacy: bool) -> Any:
    if tag == "bigint":
        return int(payload)
    if tag == "calendar":
        return calendar_parser(payload)
    if tag == "datetime":
        return datetime.fromisoformat(payload)
    if tag == "object":
        return {
            key: decode_value(item, calendar_parser=calendar_parser, legacy=legacy)
            for key, item in payload.items()
        }
    raise SerializationError(f"Unknown type tag: {tag}")


def _decode_legacy_string(value: str, calendar_parser: CalendarParser) -> Any:
    if len(value) <= _LEGACY_BIGINT_MAX_LENGTH and _LEGACY_BIGINT.match(value):
        return int(value[:-1])
    if value.startswith(_LEGACY_CALENDAR_PREFIX) and value.endswith(")"):
        return calendar_parser(value[len(_LEGACY_CALENDAR_PREFIX):-1])
    return value


def serialize_value(value: Any) -> str:
    """Encode `value` as a string suitable for persistent storage."""
    return json.dumps(encode_value(value), separators=(",", ":"))


def deserialize_value(
    text: str,
    *,
    calendar_parser: CalendarParser = parse_calendar,
    legacy: bool = False,
) -> Any:
    """Decode a string produced by `serialize_value`."""
    return decode_value(json.loads(text), calendar_parser=calendar_parser, legacy=legacy)
