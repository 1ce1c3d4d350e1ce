"""
Equality evaluator for user-defined filters.

Compares a column value against a filter value after coercing both to the
column's type. Operators are looked up in a dispatch table, so adding an
operator is a table entry plus an EqualityOp member.

Invariants:
    - Both operands are coerced before they are compared
    - A NULL operand never satisfies a filter
    - Evaluation never raises anything but FilterCoercionError

How to change safely:
    - Ordering operators must stay restricted to orderable types
    - filters_allow() short-circuits; keep filter evaluation side-effect free
"""

from __future__ import annotations

import operator
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from .coercion import coerce, is_supported, rule_for, to_text
from .errors import FilterCoercionError
from .types import ChangeEvent, EqualityOp, Filter

_OPERATORS: dict[EqualityOp, Callable[[Any, Any], bool]] = {
    EqualityOp.EQ: operator.eq,
    EqualityOp.NEQ: operator.ne,
    EqualityOp.LT: operator.lt,
    EqualityOp.LTE: operator.le,
    EqualityOp.GT: operator.gt,
    EqualityOp.GTE: operator.ge,
}

_EQUALITY_ONLY = frozenset({EqualityOp.EQ, EqualityOp.NEQ})


def supports(op: EqualityOp, type_name: str) -> bool:
    """Whether ``op`` is meaningful for values of ``type_name``.

    Raises:
        FilterCoercionError: If the type itself is unsupported
    """
    if op in _EQUALITY_ONLY:
        rule_for(type_name)
        return True
    return rule_for(type_name).orderable


def evaluate(op: EqualityOp, type_name: str, a: str | None, b: str | None) -> bool:
    """Compare ``a op b`` as values of ``type_name``.

    Args:
        op: Comparison operator
        type_name: Column type both operands are coerced to
        a: Left operand as text (the column value), None for SQL NULL
        b: Right operand as text (the filter value), None for SQL NULL

    Returns:
        The comparison result; False when either operand is NULL

    Raises:
        FilterCoercionError: If an operand cannot be coerced, or the type
            does not support the operator

    Example:
        >>> evaluate(EqualityOp.GT, "integer", "10", "9")
        True
    """
    if not supports(op, type_name):
        raise FilterCoercionError(
            f"Operator '{op.value}' is not supported for type {type_name}",
            type_name=type_name,
        )

    left = coerce(type_name, a) if a is not None else None
    right = coerce(type_name, b) if b is not None else None
    if left is None or right is None:
        return False

    try:
        return bool(_OPERATORS[op](left, right))
    except TypeError as e:
        # e.g. a jsonb object compared to a jsonb number
        raise FilterCoercionError(
            f"Values of type {type_name} are not comparable: {e}", type_name=type_name
        ) from e


def filter_allows(
    filter_: Filter,
    event: ChangeEvent,
    column_types: Mapping[str, str] | None = None,
) -> bool:
    """Evaluate one filter against an event.

    ``column_types`` maps column names to catalog types. It is only
    consulted when the change names a type with no coercion rule, such as
    a domain or an enum.

    Raises:
        FilterCoercionError: If the column is absent or evaluation fails
    """
    found = event.value_for(filter_.column_name)
    if found is None:
        raise FilterCoercionError(
            f"Column '{filter_.column_name}' is not present in the change",
            column=filter_.column_name,
        )

    type_name, value = found
    if column_types and not is_supported(type_name):
        type_name = column_types.get(filter_.column_name, type_name)
    try:
        return evaluate(filter_.op, type_name, to_text(value), filter_.value)
    except FilterCoercionError as e:
        if e.column is None:
            e.column = filter_.column_name
            e.details["column"] = filter_.column_name
        raise


def filters_allow(
    filters: Iterable[Filter],
    event: ChangeEvent,
    column_types: Mapping[str, str] | None = None,
) -> bool:
    """True when every filter passes (an empty filter list passes)."""
    for filter_ in filters:
        if not filter_allows(filter_, event, column_types):
            return False
    return True
