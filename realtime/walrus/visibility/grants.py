"""
Column grants and redaction.

A role's grant set is the set of column names it may SELECT on an entity.
It is read once per change event and used twice: to validate filters on
subscription writes, and to drop unreadable columns from outgoing changes.

Invariants:
    - A role without grants has an empty grant set, not an error
    - A failed lookup is treated as "no readable columns"
    - Redaction only ever removes columns, and is idempotent

How to change safely:
    - Never widen a grant set on error; the empty set is the only fallback
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from ..storage.base import GrantRegistry
from .errors import GrantLookupError
from .types import ColumnDescriptor, Entity, SubscriberError

logger = logging.getLogger(__name__)

GrantSet = frozenset[str]

EMPTY_GRANTS: GrantSet = frozenset()


async def load_grant_set(
    registry: GrantRegistry,
    entity: Entity,
    role: str,
) -> tuple[GrantSet, SubscriberError | None]:
    """Read the grant set, converting any failure into an empty set.

    Returns:
        (grant set, error) where error is set only if the lookup failed
    """
    try:
        return frozenset(await registry.selectable_columns(entity, role)), None
    except Exception as e:
        if not isinstance(e, GrantLookupError):
            e = GrantLookupError(
                f"Failed to read column grants on {entity.qualified_name} for {role}: {e}",
                details={"entity": entity.qualified_name, "role": role},
            )
        logger.warning(
            "Grant lookup failed, treating as no readable columns",
            extra={"entity": entity.qualified_name, "role": role, "error": e.message},
        )
        return EMPTY_GRANTS, SubscriberError(kind=e.code, message=e.message)


def redact_columns(
    columns: Sequence[ColumnDescriptor],
    grants: GrantSet,
) -> tuple[ColumnDescriptor, ...]:
    """Drop every column not in ``grants``.

    The input is returned unchanged (same order, same values) when every
    column is readable.

    Example:
        >>> cols = (ColumnDescriptor("id", "int4", 1), ColumnDescriptor("secret", "text", "x"))
        >>> [c.name for c in redact_columns(cols, frozenset({"id"}))]
        ['id']
    """
    if all(c.name in grants for c in columns):
        return tuple(columns)
    return tuple(c for c in columns if c.name in grants)
