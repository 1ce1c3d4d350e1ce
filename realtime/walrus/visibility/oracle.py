"""
Row authorization oracle.

Decides whether one user may see one row by asking the database: the
subscriber is impersonated and the row is looked up by primary key. If the
row-level security policies hide it, the lookup finds nothing.

The lookup is prepared once per change event (the entity and key columns
are fixed for the event) and executed once per subscriber. Only the
identity and the key values vary between executions.

Invariants:
    - Every execution runs under impersonating()
    - Any failure other than IdentityRestorationFailure becomes
      OracleExecutionError for that subscriber
    - The prepared check is released even if an execution failed

How to change safely:
    - Never interpolate key values into the query; pass them as parameters
    - Do not reuse a prepared check across events; grants and types may change
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from ..storage.base import EvaluationSession, ExecutionContext
from .context import impersonating
from .errors import IdentityRestorationFailure, OracleExecutionError
from .types import Entity, PrimaryKeyColumn

logger = logging.getLogger(__name__)


class ExistenceCheck:
    """A row existence check bound to one entity and key shape.

    Used as an async context manager; the prepared query is built on first
    use and released on exit.
    """

    def __init__(
        self,
        session: EvaluationSession,
        entity: Entity,
        primary_key: Sequence[PrimaryKeyColumn],
        role: str,
    ) -> None:
        self._session = session
        self._entity = entity
        self._primary_key = tuple(primary_key)
        self._role = role
        self._handle: Any = None
        self.executions = 0

    async def __aenter__(self) -> ExistenceCheck:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        if self._handle is None:
            return
        handle, self._handle = self._handle, None
        try:
            await self._session.release_existence_check(handle)
        except Exception:
            logger.warning(
                "Failed to release existence check",
                extra={"entity": self._entity.qualified_name},
                exc_info=True,
            )

    async def _prepared(self) -> Any:
        if self._handle is None:
            self._handle = await self._session.prepare_existence_check(
                self._entity, self._primary_key
            )
        return self._handle

    async def is_visible(
        self,
        context: ExecutionContext,
        user_id: str,
        values: Sequence[str | None],
    ) -> bool:
        """Whether ``user_id`` can see the row with these key values.

        The check runs on the session it was prepared on; ``context`` is the
        execution context of that session, switched to ``user_id`` for the
        duration of the check.

        Raises:
            OracleExecutionError: If the check cannot be executed
            IdentityRestorationFailure: If the ambient identity was lost
        """
        self.executions += 1
        try:
            handle = await self._prepared()
            async with impersonating(context, user_id, self._role):
                return await self._session.row_exists(handle, values)
        except (IdentityRestorationFailure, OracleExecutionError):
            raise
        except Exception as e:
            raise OracleExecutionError(
                f"Authorization check on {self._entity.qualified_name} failed: {e}",
                details={"entity": self._entity.qualified_name, "user_id": user_id},
            ) from e


class RowAuthorizationOracle:
    """Factory for per-event existence checks.

    Example:
        >>> oracle = RowAuthorizationOracle("authenticated")
        >>> async with oracle.prepare(session, entity, event.primary_key) as check:
        ...     visible = await check.is_visible(session, "user-1", ["28"])
    """

    def __init__(self, role: str = "authenticated") -> None:
        self.role = role

    def prepare(
        self,
        session: EvaluationSession,
        entity: Entity,
        primary_key: Sequence[PrimaryKeyColumn],
    ) -> ExistenceCheck:
        return ExistenceCheck(session, entity, primary_key, self.role)
