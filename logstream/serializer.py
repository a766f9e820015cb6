"""Record serializer: turns one log record into the bytes written to disk.

Every function here is pure: no I/O and no shared state. The active policy is
picked once per stream with ``make_serializer``.
"""

import json
from collections.abc import Mapping
from datetime import date, datetime, timezone
from functools import partial

from logstream.errors import SerializationError
from logstream.models import FormatPolicy

INTERNAL_FIELDS = ("name", "hostname", "pid", "level", "msg", "time", "v")

CIRCULAR = "[Circular]"

_SEVERITIES = {
    10: "TRACE",
    20: "DEBUG",
    40: "WARN",
    50: "ERROR",
    60: "FATAL",
}


def severity_from_level(level) -> str:
    """Map a numeric level to its name. Unmapped codes, 30 included, are INFO."""
    if isinstance(level, bool):
        return "INFO"
    return _SEVERITIES.get(level, "INFO")


def _json_default(obj):
    if isinstance(obj, datetime):
        return format_time(obj)
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    if isinstance(obj, bytes):
        return obj.decode("utf-8", errors="replace")
    return _safe_str(obj)


def _safe_str(value) -> str:
    try:
        return str(value)
    except Exception as e:
        raise SerializationError(f"Cannot render {type(value).__name__}: {e}") from e


def _decycle(value, ancestors: set[int]):
    """Copy containers, replacing any reference back to an ancestor with CIRCULAR."""
    if isinstance(value, (Mapping, list, tuple, set, frozenset)):
        marker = id(value)
        if marker in ancestors:
            return CIRCULAR
        ancestors.add(marker)
        try:
            if isinstance(value, Mapping):
                return {
                    k if isinstance(k, (str, int, float, bool)) or k is None else _safe_str(k):
                        _decycle(v, ancestors)
                    for k, v in value.items()
                }
            return [_decycle(v, ancestors) for v in value]
        finally:
            ancestors.discard(marker)
    return value


def format_time(value) -> str:
    """ISO-8601 with millisecond precision and a ``Z`` suffix for datetimes."""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"
    if value is None:
        return ""
    return _safe_str(value)


def to_json(record) -> bytes:
    """Cycle-safe JSON. Records nested too deeply to walk raise SerializationError."""
    try:
        text = json.dumps(_decycle(record, set()), default=_json_default)
    except (RecursionError, ValueError, TypeError) as e:
        raise SerializationError(f"Cannot serialize record: {e}") from e
    return (text + "\n").encode("utf-8")


def to_unsafe_json(record) -> bytes:
    """JSON without the cycle pre-walk. A cyclic record raises SerializationError."""
    try:
        text = json.dumps(record, default=_json_default)
    except (RecursionError, ValueError, TypeError) as e:
        raise SerializationError(f"Cannot serialize record: {e}") from e
    return (text + "\n").encode("utf-8")


def to_ordered_json(record, field_order=()) -> bytes:
    ordered = {key: record[key] for key in field_order if key in record}
    for key, value in record.items():
        if key not in ordered:
            ordered[key] = value
    return to_json(ordered)


def escape_value(text: str) -> str:
    """Double-quote safe escaping with control and non-ASCII characters escaped."""
    return json.dumps(text, ensure_ascii=True)[1:-1]


def _format_field_value(value) -> str:
    if isinstance(value, (Mapping, list, tuple, set, frozenset)):
        return escape_value(json.dumps(value, default=_json_default))
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return escape_value(format_time(value))
    return escape_value(_safe_str(value))


def format_extra_fields(record) -> str:
    output = ""
    for key, value in record.items():
        if key in INTERNAL_FIELDS:
            continue
        try:
            output += f' {escape_value(_safe_str(key))}="{_format_field_value(value)}"'
        except (TypeError, ValueError, RecursionError, SerializationError):
            # unformattable field: omit it, keep the line
            continue
    return output


def to_text(record) -> bytes:
    """``[time] name.SEVERITY L=level E="msg" pid=pid key="value" ...``"""
    level = record.get("level")
    line = '[{}] {}.{} L={} E="{}" pid={}'.format(
        format_time(record.get("time")),
        _safe_str(record.get("name", "")),
        severity_from_level(level),
        _safe_str(level),
        _safe_str(record.get("msg", "")),
        _safe_str(record.get("pid", "")),
    )
    line += format_extra_fields(record)
    return (line + "\n").encode("utf-8")


def to_raw(record) -> bytes:
    """Pass-through for pre-formatted text. No newline is added."""
    if isinstance(record, bytes):
        return record
    return str(record).encode("utf-8")


def serialize(record, policy: FormatPolicy = FormatPolicy.JSON, field_order=()) -> bytes:
    """Serialize one record. Strings are always written as raw text."""
    if isinstance(record, (str, bytes)):
        return to_raw(record)
    if policy is FormatPolicy.RAW:
        # structured records under the raw policy still need a line format
        return to_json(record)
    if policy is FormatPolicy.ORDERED_JSON:
        return to_ordered_json(record, field_order)
    if policy is FormatPolicy.UNSAFE_JSON:
        return to_unsafe_json(record)
    if policy is FormatPolicy.TEXT:
        return to_text(record)
    return to_json(record)


def make_serializer(policy: FormatPolicy, field_order=()):
    """Bind a policy once so the hot path does no dispatch on options."""
    return partial(serialize, policy=policy, field_order=tuple(field_order))
