"""
Field extraction from arbitrary webhook JSON.

Path grammar (a small JSONPath subset):
    [$ | $.] segment ( "." segment )*
    segment := key | key "[" <int> "]"

resolve_path() never raises: any missing or mistyped step yields MISSING.
extract_fields() turns a dataset's mapped FieldDefinitions into a flat
{field_slug: value} map, coercing each value to the declared field type.
Fields that do not resolve, resolve to JSON null, or fail coercion are omitted.
"""

import json
import math
import re
from datetime import datetime, timezone
from typing import Any, Iterable

import structlog

from salesboard.services.shared.models import FieldSource, FieldType

logger = structlog.get_logger()


class _Missing:
    """Sentinel for "path did not resolve" (distinct from JSON null)."""

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()

_INDEXED_SEGMENT_RE = re.compile(r"^(.+)\[(\d+)\]$")
_FLOAT_PREFIX_RE = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")


def _strip_root(path: str) -> str:
    if path.startswith("$."):
        path = path[2:]
    elif path.startswith("$"):
        path = path[1:]
    if path.startswith("."):
        path = path[1:]
    return path


def _step(current: Any, key: str) -> Any:
    if isinstance(current, dict):
        return current.get(key, MISSING)
    if isinstance(current, list) and key.isdigit():
        index = int(key)
        return current[index] if index < len(current) else MISSING
    return MISSING


def resolve_path(payload: Any, path: str) -> Any:
    """Return the value addressed by `path` in `payload`, or MISSING."""
    if not path or payload is None:
        return MISSING

    current = payload
    for part in _strip_root(path).split("."):
        match = _INDEXED_SEGMENT_RE.match(part)
        if match:
            key, index = match.group(1), int(match.group(2))
            container = _step(current, key)
            if isinstance(container, list) and index < len(container):
                current = container[index]
            else:
                return MISSING
        else:
            current = _step(current, part)
        if current is MISSING:
            return MISSING
    return current


# ── Type coercion ─────────────────────────────────────────────────────────────

def _to_number(value: Any) -> float:
    """Float parse with a numeric-prefix rule for strings; anything else is 0."""
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        match = _FLOAT_PREFIX_RE.match(value.strip())
        number = float(match.group(0)) if match else 0.0
    else:
        return 0.0
    return 0.0 if math.isnan(number) else number


def _is_truthy(value: Any) -> bool:
    # Empty containers are truthy here; only scalar zero/empty values are falsy
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value != 0 and not math.isnan(value)
    if isinstance(value, str):
        return value != ""
    return True


def _to_iso_utc(value: Any) -> str:
    """
    Parse a timestamp and re-encode as ISO-8601 UTC with milliseconds
    (e.g. "2026-01-02T00:00:00.000Z"). Numbers are epoch milliseconds; naive
    strings are taken as UTC. Raises ValueError on anything unparseable.
    """
    if isinstance(value, bool):
        raise ValueError("boolean is not a timestamp")
    if isinstance(value, (int, float)):
        parsed = datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        parsed = parsed.astimezone(timezone.utc)
    else:
        raise ValueError(f"unsupported timestamp type {type(value).__name__}")
    return parsed.strftime("%Y-%m-%dT%H:%M:%S.") + f"{parsed.microsecond // 1000:03d}Z"


def to_text(value: Any) -> str:
    """JSON-style text form: true/false, integral floats without ".0", compact JSON for containers."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False)
    return str(value)


def coerce_value(value: Any, field_type: FieldType) -> Any:
    """Coerce a resolved value to `field_type`. Raises ValueError for bad dates."""
    if field_type == FieldType.number:
        return _to_number(value)
    if field_type == FieldType.boolean:
        return _is_truthy(value)
    if field_type == FieldType.date:
        return _to_iso_utc(value)
    return to_text(value)


def extract_fields(payload: Any, fields: Iterable) -> dict[str, Any]:
    """
    Build {field_slug: coerced value} for every mapped field that resolves.
    `fields` is any iterable of DatasetField-like objects, already ordered.
    """
    extracted: dict[str, Any] = {}
    for field in fields:
        if field.source_type not in (None, FieldSource.mapped) or not field.json_path:
            continue
        value = resolve_path(payload, field.json_path)
        if value is MISSING or value is None:
            continue
        try:
            extracted[field.field_slug] = coerce_value(value, field.field_type or FieldType.string)
        except (ValueError, OverflowError, OSError) as exc:
            logger.warning(
                "field_coercion_failed",
                field_slug=field.field_slug,
                field_type=getattr(field.field_type, "value", field.field_type),
                error=str(exc),
            )
    return extracted
