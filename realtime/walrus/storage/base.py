"""
Storage protocols the visibility engine evaluates against.

The engine never talks to a database driver directly. Everything it needs
from the source database is expressed as a small protocol here, and one
EvaluationSession bundles them for the lifetime of a single change event:

- Catalog: relation lookup, RLS status, column types
- GrantRegistry: columns a role may SELECT
- ExecutionContext: the ambient identity checks run under
- RowExistenceProbe: "does this row exist for the current identity?"
- SubscriptionRegistry: subscriptions for an entity

Invariants:
    - A session is used by exactly one evaluation at a time
    - Everything a session reads is read within one transaction
    - Closing a session rolls back; nothing the engine does is ever committed

How to change safely:
    - Protocol changes require updating postgres.py, memory.py and the test doubles
    - Keep methods async even when an implementation is synchronous
"""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import Sequence
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from ..visibility.types import Entity, PrimaryKeyColumn, Subscription


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


@dataclass(frozen=True)
class Identity:
    """The identity queries run under.

    Attributes:
        role: Database role
        user_id: Authenticated user claim (None when unset)
        search_path: Schema search path
    """

    role: str
    user_id: str | None = None
    search_path: str | None = None


@runtime_checkable
class Catalog(Protocol):
    """Relation metadata."""

    @abstractmethod
    async def resolve_entity(self, schema: str, table: str) -> Entity:
        """Resolve a relation by name.

        Raises:
            EntityResolutionError: If the relation does not exist
        """
        ...

    @abstractmethod
    async def is_rls_enabled(self, entity: Entity) -> bool:
        ...

    @abstractmethod
    async def column_type(self, entity: Entity, column: str) -> str | None:
        """Catalog type of a column, or None when it cannot be determined."""
        ...


@runtime_checkable
class GrantRegistry(Protocol):
    """Column-level SELECT grants."""

    @abstractmethod
    async def selectable_columns(self, entity: Entity, role: str) -> frozenset[str]:
        """Columns ``role`` may SELECT on ``entity`` (empty when none).

        Raises:
            GrantLookupError: If the grants cannot be read
        """
        ...


@runtime_checkable
class ExecutionContext(Protocol):
    """Mutable identity of one database session."""

    @abstractmethod
    async def current_identity(self) -> Identity:
        ...

    @abstractmethod
    async def set_identity(self, identity: Identity) -> None:
        ...


@runtime_checkable
class RowExistenceProbe(Protocol):
    """Row existence checks under the current identity.

    A check is prepared once per (entity, key columns) and then executed
    with different key values, typically once per subscriber.
    """

    @abstractmethod
    async def prepare_existence_check(
        self, entity: Entity, primary_key: Sequence[PrimaryKeyColumn]
    ) -> Any:
        """Build a reusable check and return an opaque handle to it."""
        ...

    @abstractmethod
    async def row_exists(self, handle: Any, values: Sequence[str | None]) -> bool:
        """Whether the row with these key values is visible."""
        ...

    @abstractmethod
    async def release_existence_check(self, handle: Any) -> None:
        ...


@runtime_checkable
class SubscriptionRegistry(Protocol):
    """Read side of the subscription store."""

    @abstractmethod
    async def list_for_entity(self, entity: Entity) -> list[Subscription]:
        ...


class EvaluationSession(
    Catalog, GrantRegistry, ExecutionContext, RowExistenceProbe, Protocol
):
    """Everything one evaluation needs, bound to one connection."""


@runtime_checkable
class StorageBackend(Protocol):
    """Hands out evaluation sessions."""

    @abstractmethod
    def session(self) -> AbstractAsyncContextManager[EvaluationSession]:
        """Open a session (one connection, one transaction)."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...
