"""
Type-aware coercion of text values to PostgreSQL column types.

Filter values and column values both travel as text. Before two values can be
compared they are coerced to the column's type, so that ordering follows the
type (``'10' > '9'`` for integers) and not the characters.

The same rules are used when a subscription is written (to reject values that
could never be evaluated) and when a change is evaluated.

Invariants:
    - Coercion either returns a comparable Python value or raises FilterCoercionError
    - Unsupported types fail closed (raise), they never fall back to text comparison
    - Type names are matched case-insensitively with modifiers removed

How to change safely:
    - Add a TypeRule to _RULES and its aliases to _ALIASES
    - Keep coercers strict: reject anything PostgreSQL's input function rejects
"""

from __future__ import annotations

import json
import math
import re
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any

from .errors import FilterCoercionError

_MODIFIER_RE = re.compile(r"\(\s*\d+(\s*,\s*\d+)?\s*\)")
_INTEGER_RE = re.compile(r"[+-]?\d+")
_SHORT_OFFSET_RE = re.compile(r"(\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?)([+-]\d{2})$")
_FRACTION_RE = re.compile(r"(\d{2}:\d{2}:\d{2})\.(\d+)")

_TRUE_LITERALS = {"t", "true", "y", "yes", "on", "1"}
_FALSE_LITERALS = {"f", "false", "n", "no", "off", "0"}


@dataclass(frozen=True)
class TypeRule:
    """How to coerce and compare one family of column types.

    Attributes:
        name: Canonical type name
        coerce: Converts stripped-down text into a comparable value
        orderable: Whether lt/lte/gt/gte are meaningful for the type
    """

    name: str
    coerce: Callable[[str], Any]
    orderable: bool = True


def to_text(value: Any) -> str | None:
    """Render a JSON value the way PostgreSQL's ``->>`` operator would."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    return json.dumps(value)


def normalize_type_name(type_name: str) -> str:
    """Lower-case a type name and drop length/precision modifiers.

    Example:
        >>> normalize_type_name("Character Varying(255)")
        'character varying'
    """
    name = _MODIFIER_RE.sub("", type_name.strip().lower())
    name = " ".join(name.split())
    if name.startswith("pg_catalog."):
        name = name[len("pg_catalog."):]
    return name.strip('"')


def _integer(bits: int) -> Callable[[str], int]:
    low, high = -(2 ** (bits - 1)), 2 ** (bits - 1) - 1

    def coerce(text: str) -> int:
        stripped = text.strip()
        if not _INTEGER_RE.fullmatch(stripped):
            raise ValueError("invalid input syntax for integer")
        value = int(stripped)
        if not low <= value <= high:
            raise ValueError(f"value out of range for {bits}-bit integer")
        return value

    return coerce


def _numeric(text: str) -> Decimal:
    value = Decimal(text.strip())
    if not value.is_finite():
        raise ValueError("non-finite numeric values are not comparable")
    return value


class _FloatNaN:
    """PostgreSQL's float NaN: equal to itself and greater than every number."""

    def __eq__(self, other: object) -> bool:
        return isinstance(other, _FloatNaN)

    def __hash__(self) -> int:
        return hash("NaN")

    def __lt__(self, other: object) -> bool:
        return False

    def __le__(self, other: object) -> bool:
        return isinstance(other, _FloatNaN)

    def __gt__(self, other: object) -> bool:
        return not isinstance(other, _FloatNaN)

    def __ge__(self, other: object) -> bool:
        return True

    def __repr__(self) -> str:
        return "NaN"


FLOAT_NAN = _FloatNaN()


def _float(text: str) -> float | _FloatNaN:
    stripped = text.strip()
    if "_" in stripped:
        raise ValueError("invalid input syntax for floating point")
    value = float(stripped)
    if math.isnan(value):
        return FLOAT_NAN
    return value


def _boolean(text: str) -> bool:
    lowered = text.strip().lower()
    if lowered in _TRUE_LITERALS:
        return True
    if lowered in _FALSE_LITERALS:
        return False
    raise ValueError("invalid input syntax for boolean")


def _bpchar(text: str) -> str:
    # Trailing blanks are insignificant for character(n)
    return text.rstrip(" ")


def _iso_text(text: str) -> str:
    """Rewrite PostgreSQL date/time output into a form fromisoformat() accepts."""
    stripped = text.strip()
    if stripped[-1:] in ("Z", "z"):
        stripped = stripped[:-1] + "+00:00"
    # PostgreSQL drops trailing zeros from fractional seconds; keep microseconds
    stripped = _FRACTION_RE.sub(
        lambda m: f"{m.group(1)}.{m.group(2)[:6].ljust(6, '0')}", stripped
    )
    # PostgreSQL renders whole-hour offsets as "+00"
    return _SHORT_OFFSET_RE.sub(r"\1\2:00", stripped)


def _parse_datetime(text: str) -> datetime:
    return datetime.fromisoformat(_iso_text(text))


def _time(text: str) -> time:
    return time.fromisoformat(_iso_text(text)).replace(tzinfo=None)


def _timestamp(text: str) -> datetime:
    return _parse_datetime(text).replace(tzinfo=None)


def _timestamptz(text: str) -> datetime:
    value = _parse_datetime(text)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def _timetz(text: str) -> time:
    value = time.fromisoformat(_iso_text(text))
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


_RULES: dict[str, TypeRule] = {
    "int2": TypeRule("int2", _integer(16)),
    "int4": TypeRule("int4", _integer(32)),
    "int8": TypeRule("int8", _integer(64)),
    "numeric": TypeRule("numeric", _numeric),
    "float8": TypeRule("float8", _float),
    "bool": TypeRule("bool", _boolean),
    "text": TypeRule("text", lambda text: text),
    "bpchar": TypeRule("bpchar", _bpchar),
    "citext": TypeRule("citext", lambda text: text.lower()),
    "uuid": TypeRule("uuid", lambda text: uuid.UUID(text.strip())),
    "date": TypeRule("date", lambda text: date.fromisoformat(text.strip())),
    "time": TypeRule("time", _time),
    "timetz": TypeRule("timetz", _timetz),
    "timestamp": TypeRule("timestamp", _timestamp),
    "timestamptz": TypeRule("timestamptz", _timestamptz),
    "jsonb": TypeRule("jsonb", json.loads, orderable=False),
    # Enum labels compare by name; declaration order is not known here
    "anyenum": TypeRule("anyenum", lambda text: text, orderable=False),
}

_ALIASES: dict[str, str] = {
    "smallint": "int2",
    "smallserial": "int2",
    "serial2": "int2",
    "integer": "int4",
    "int": "int4",
    "serial": "int4",
    "serial4": "int4",
    "bigint": "int8",
    "bigserial": "int8",
    "serial8": "int8",
    "decimal": "numeric",
    "real": "float8",
    "float4": "float8",
    "float": "float8",
    "double precision": "float8",
    "boolean": "bool",
    "character varying": "text",
    "varchar": "text",
    "name": "text",
    "char": "bpchar",
    "character": "bpchar",
    "time without time zone": "time",
    "time with time zone": "timetz",
    "timestamp without time zone": "timestamp",
    "timestamp with time zone": "timestamptz",
    "json": "jsonb",
}


def rule_for(type_name: str) -> TypeRule:
    """Look up the coercion rule for a column type.

    Raises:
        FilterCoercionError: If the type is an array or is not supported
    """
    name = normalize_type_name(type_name)
    if name.endswith("[]") or name.startswith("_"):
        raise FilterCoercionError(
            f"Array type {type_name} is not supported in filters", type_name=type_name
        )

    rule = _RULES.get(_ALIASES.get(name, name))
    if rule is None:
        raise FilterCoercionError(
            f"Type {type_name} is not supported in filters", type_name=type_name
        )
    return rule


def is_supported(type_name: str) -> bool:
    """Whether values of ``type_name`` can be coerced at all."""
    try:
        rule_for(type_name)
    except FilterCoercionError:
        return False
    return True


def coerce(type_name: str, text: str) -> Any:
    """Coerce text to a comparable value of the given column type.

    Args:
        type_name: PostgreSQL type name (e.g. "bigint", "character varying(20)")
        text: Text representation of the value

    Returns:
        A Python value ordered the same way PostgreSQL orders the type

    Raises:
        FilterCoercionError: If the type is unsupported or the text is invalid
    """
    rule = rule_for(type_name)
    try:
        return rule.coerce(text)
    except (ValueError, ArithmeticError) as e:
        raise FilterCoercionError(
            f"Cannot coerce {text!r} to {type_name}: {e}", type_name=type_name
        ) from e
