"""
In-memory storage backend for testing.

Emulates the parts of PostgreSQL the engine depends on:
- Relations with typed columns, a primary key and an RLS switch
- Column-level SELECT grants per role
- Row-level security policies as Python predicates
- A per-session identity (role, user claim, search path)

Semantics follow PostgreSQL:
- The table owner bypasses RLS
- With RLS enabled and no policies, no rows are visible (default deny)
- Multiple policies are permissive: a row is visible if any allows it
- Reading a column without a SELECT grant is a permission error

Invariants:
    - All data is lost on process exit
    - Sessions never change table data

How to change safely:
    - This is test-only code, but tests rely on it matching PostgreSQL;
      check behaviour against the PostgreSQL suite when changing semantics
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any

from ..visibility.coercion import coerce, to_text
from ..visibility.errors import EntityResolutionError, GrantLookupError
from ..visibility.types import Entity, PrimaryKeyColumn
from .base import Identity, StorageError

logger = logging.getLogger(__name__)

Policy = Callable[[Identity, Mapping[str, Any]], bool]

OWNER_ROLE = "postgres"


class InsufficientPrivilegeError(StorageError):
    """Role lacks a privilege the query needs."""
    pass


@dataclass
class InMemoryTable:
    """One emulated relation."""

    entity: Entity
    columns: dict[str, str]
    primary_key: tuple[str, ...]
    rls_enabled: bool = False
    owner: str = OWNER_ROLE
    grants: dict[str, set[str]] = field(default_factory=dict)
    policies: list[Policy] = field(default_factory=list)
    rows: list[dict[str, Any]] = field(default_factory=list)


class InMemoryDatabase:
    """An emulated database that hands out InMemorySession objects.

    Example:
        >>> db = InMemoryDatabase()
        >>> db.create_table("public", "notes", {"id": "int4", "body": "text"}, ["id"],
        ...                 rls_enabled=True)
        >>> db.grant_select("public", "notes", "authenticated")
        >>> db.add_policy("public", "notes", lambda ident, row: row["body"] == ident.user_id)
        >>> async with db.session() as session:
        ...     entity = await session.resolve_entity("public", "notes")
    """

    def __init__(self, default_role: str = OWNER_ROLE) -> None:
        self.default_role = default_role
        self._tables: dict[tuple[str, str], InMemoryTable] = {}
        # Domain and enum names to the type their values compare as
        self.types: dict[str, str] = {}
        self._oids = itertools.count(16384)
        self.open_sessions = 0
        self.sessions_opened = 0
        # Called with every new session, for failure injection
        self.on_session: Callable[[InMemorySession], None] | None = None

    def create_table(
        self,
        schema: str,
        name: str,
        columns: Mapping[str, str],
        primary_key: Sequence[str],
        rls_enabled: bool = False,
        owner: str = OWNER_ROLE,
    ) -> Entity:
        entity = Entity(schema, name, oid=next(self._oids))
        self._tables[(schema, name)] = InMemoryTable(
            entity=entity,
            columns=dict(columns),
            primary_key=tuple(primary_key),
            rls_enabled=rls_enabled,
            owner=owner,
        )
        return entity

    def create_type(self, name: str, resolves_to: str) -> None:
        """Declare a domain (resolving to its base type) or an enum ('anyenum')."""
        self.types[name] = resolves_to

    def resolve_type(self, type_name: str) -> str:
        while type_name in self.types:
            type_name = self.types[type_name]
        return type_name

    def drop_table(self, schema: str, name: str) -> None:
        del self._tables[(schema, name)]

    def table(self, schema: str, name: str) -> InMemoryTable:
        return self._tables[(schema, name)]

    def set_rls(self, schema: str, name: str, enabled: bool) -> None:
        self.table(schema, name).rls_enabled = enabled

    def grant_select(
        self,
        schema: str,
        name: str,
        role: str,
        columns: Sequence[str] | None = None,
    ) -> None:
        """Grant SELECT on some columns (all columns when None)."""
        table = self.table(schema, name)
        granted = table.grants.setdefault(role, set())
        granted.update(columns if columns is not None else table.columns)

    def revoke_select(self, schema: str, name: str, role: str) -> None:
        self.table(schema, name).grants.pop(role, None)

    def add_policy(self, schema: str, name: str, predicate: Policy) -> None:
        self.table(schema, name).policies.append(predicate)

    def insert_row(self, schema: str, name: str, row: Mapping[str, Any]) -> None:
        self.table(schema, name).rows.append(dict(row))

    def delete_rows(self, schema: str, name: str) -> None:
        self.table(schema, name).rows.clear()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[InMemorySession]:
        session = InMemorySession(self, Identity(role=self.default_role, search_path="public"))
        if self.on_session is not None:
            self.on_session(session)
        self.open_sessions += 1
        self.sessions_opened += 1
        try:
            yield session
        finally:
            self.open_sessions -= 1

    async def close(self) -> None:
        self._tables.clear()

    def _lookup(self, entity: Entity) -> InMemoryTable:
        table = self._tables.get((entity.schema, entity.name))
        if table is None:
            raise StorageError(f'relation "{entity.qualified_name}" does not exist')
        return table


@dataclass(frozen=True)
class _PreparedCheck:
    table: InMemoryTable
    columns: tuple[PrimaryKeyColumn, ...]


class InMemorySession:
    """One emulated connection with its own identity.

    Failure injection for tests: set ``fail_grants``, ``fail_row_exists``,
    ``fail_set_identity`` or ``corrupt_restore`` to make the matching
    operation misbehave.
    """

    def __init__(self, database: InMemoryDatabase, identity: Identity) -> None:
        self.database = database
        self._identity = identity
        self.prepared: list[_PreparedCheck] = []
        self.released = 0
        self.row_checks: list[tuple[Identity, tuple[str | None, ...]]] = []
        self.fail_grants = False
        self.fail_row_exists: Callable[[Identity], bool] | None = None
        self.fail_set_identity = False
        self.corrupt_restore = False

    # Catalog

    async def resolve_entity(self, schema: str, table: str) -> Entity:
        found = self.database._tables.get((schema, table))
        if found is None:
            raise EntityResolutionError(schema, table, "relation does not exist")
        return found.entity

    async def is_rls_enabled(self, entity: Entity) -> bool:
        return self.database._lookup(entity).rls_enabled

    async def column_type(self, entity: Entity, column: str) -> str | None:
        type_name = self.database._lookup(entity).columns.get(column)
        return self.database.resolve_type(type_name) if type_name is not None else None

    # Grants

    async def selectable_columns(self, entity: Entity, role: str) -> frozenset[str]:
        if self.fail_grants:
            raise GrantLookupError(f"permission denied for catalog lookup on {entity}")
        table = self.database._lookup(entity)
        granted = table.grants.get(role, set())
        return frozenset(c for c in table.columns if c in granted)

    # Execution context

    async def current_identity(self) -> Identity:
        return self._identity

    async def set_identity(self, identity: Identity) -> None:
        if self.fail_set_identity and identity.role != self._identity.role:
            raise StorageError("could not change role")
        if self.corrupt_restore and identity.user_id is None:
            # Pretend the reset was lost
            return
        self._identity = identity

    # Row existence

    async def prepare_existence_check(
        self, entity: Entity, primary_key: Sequence[PrimaryKeyColumn]
    ) -> _PreparedCheck:
        table = self.database._lookup(entity)
        for pk in primary_key:
            if pk.name not in table.columns:
                raise StorageError(f'column "{pk.name}" does not exist')
        check = _PreparedCheck(table, tuple(primary_key))
        self.prepared.append(check)
        return check

    async def row_exists(self, handle: _PreparedCheck, values: Sequence[str | None]) -> bool:
        identity = self._identity
        self.row_checks.append((identity, tuple(values)))
        if self.fail_row_exists is not None and self.fail_row_exists(identity):
            raise StorageError(f"check failed for {identity.user_id}")

        table = handle.table
        key_names = [pk.name for pk in handle.columns]
        bypass_rls = identity.role == table.owner
        if not bypass_rls:
            missing = set(key_names) - table.grants.get(identity.role, set())
            if missing:
                raise InsufficientPrivilegeError(
                    f"permission denied for table {table.entity.name}"
                )

        key_types = [self.database.resolve_type(table.columns[name]) for name in key_names]
        wanted = [
            coerce(type_name, value) if value is not None else None
            for type_name, value in zip(key_types, values)
        ]

        if any(w is None for w in wanted):
            # NULL never equals anything
            return False

        for row in table.rows:
            current = [
                coerce(type_name, to_text(row[name])) if row.get(name) is not None else None
                for type_name, name in zip(key_types, key_names)
            ]
            if current != wanted:
                continue
            if bypass_rls or not table.rls_enabled:
                return True
            return any(policy(identity, row) for policy in table.policies)
        return False

    async def release_existence_check(self, handle: _PreparedCheck) -> None:
        self.released += 1
