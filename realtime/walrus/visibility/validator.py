"""
Write-time validation of subscription filters.

Filters are user input. They are checked when a subscription is created or
updated, against the same grants and coercion rules used at evaluation
time, so a filter that can never be evaluated is rejected up front.

Checks, in order, for each filter:
    1. The column is selectable by the authenticated role
    2. The column type can be read from the catalog
    3. The value coerces to that type
    4. The operator is supported for that type

Invariants:
    - Validation stops at the first invalid filter
    - A filter can only ever reference a column the role may read

How to change safely:
    - Keep the checks in step with equality.evaluate(); anything accepted
      here must be evaluable there
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from ..storage.base import EvaluationSession
from . import equality
from .coercion import coerce
from .errors import FilterCoercionError, FilterError
from .grants import load_grant_set
from .types import Entity, Filter

logger = logging.getLogger(__name__)


class FilterValidator:
    """Validates subscription filters against one role's view of an entity.

    Example:
        >>> validator = FilterValidator("authenticated")
        >>> await validator.validate(session, entity, [Filter("body", EqualityOp.EQ, "hi")])
    """

    def __init__(self, role: str = "authenticated") -> None:
        self.role = role

    async def validate(
        self,
        session: EvaluationSession,
        entity: Entity,
        filters: Sequence[Filter],
    ) -> None:
        """Validate filters.

        Raises:
            FilterError: For the first invalid filter
        """
        if not filters:
            return

        grants, _ = await load_grant_set(session, entity, self.role)

        for filter_ in filters:
            column = filter_.column_name

            if column not in grants:
                raise FilterError(column, "invalid column name")

            try:
                type_name = await session.column_type(entity, column)
            except Exception:
                logger.warning(
                    "Column type lookup failed",
                    extra={"entity": entity.qualified_name, "column": column},
                    exc_info=True,
                )
                type_name = None
            if not type_name:
                raise FilterError(column, "failed to look up type")

            try:
                coerce(type_name, filter_.value)
            except FilterCoercionError:
                raise FilterError(
                    column, f"value '{filter_.value}' is not a valid {type_name}"
                )

            if not equality.supports(filter_.op, type_name):
                raise FilterError(
                    column, f"operator '{filter_.op.value}' is not supported for type {type_name}"
                )
