"""
PostgreSQL storage backend.

Runs every catalog lookup, grant lookup and authorization check against the
source database with SQLAlchemy's asyncio extension on asyncpg. Each
evaluation gets its own AsyncSession, and therefore its own connection and
transaction; the transaction is always rolled back.

Impersonation uses transaction-local settings, the same mechanism the
database's own RLS policies read:

    SELECT set_config('role', 'authenticated', true),
           set_config('request.jwt.claim.sub', '<user id>', true)

Row checks are a parameterized existence query per (entity, key columns):

    SELECT EXISTS (
        SELECT 1 FROM "public"."notes"
        WHERE "id" = CAST(CAST(:k0 AS text) AS bigint)
    )

Invariants:
    - Identifiers are quoted by the dialect; values are always bound parameters
    - Key values are bound as text and cast in SQL, so the driver never
      guesses their type
    - Row checks, type lookups and grant lookups run inside savepoints, so a
      failing query does not abort the evaluation's transaction
    - Nothing is ever committed

How to change safely:
    - Run tests/integration/test_postgres.py (WALRUS_PG_DSN) after any change
    - Catalog queries must stay compatible with PostgreSQL 12+
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.sql.elements import TextClause

from ..visibility.errors import EntityResolutionError, GrantLookupError
from ..visibility.types import Entity, PrimaryKeyColumn
from .base import Identity, StorageError

logger = logging.getLogger(__name__)

DEFAULT_CLAIM_SETTING = "request.jwt.claim.sub"

_RESOLVE_ENTITY = text("""
    SELECT c.oid
    FROM pg_catalog.pg_class AS c
    JOIN pg_catalog.pg_namespace AS n ON c.relnamespace = n.oid
    WHERE n.nspname = :schema
      AND c.relname = :table
      AND c.relkind IN ('r', 'p', 'v', 'm', 'f')
""")

_RLS_ENABLED = text("""
    SELECT c.relrowsecurity
    FROM pg_catalog.pg_class AS c
    JOIN pg_catalog.pg_namespace AS n ON c.relnamespace = n.oid
    WHERE n.nspname = :schema AND c.relname = :table
""")

_SELECTABLE_COLUMNS = text("""
    SELECT rcg.column_name
    FROM information_schema.role_column_grants AS rcg
    JOIN information_schema.columns AS c
      ON rcg.table_schema = c.table_schema
     AND rcg.table_name = c.table_name
     AND rcg.column_name = c.column_name
    WHERE rcg.privilege_type = 'SELECT'
      AND rcg.grantee = :role
      AND rcg.table_schema = :schema
      AND rcg.table_name = :table
    ORDER BY c.ordinal_position
""")

# Domains are followed down to their base type; enums report as anyenum.
# The declared type is kept for casts in existence checks.
_COLUMN_TYPE = text("""
    WITH RECURSIVE chain AS (
        SELECT a.atttypid AS typid,
               a.atttypmod AS typmod,
               pg_catalog.format_type(a.atttypid, a.atttypmod) AS declared,
               0 AS depth
        FROM pg_catalog.pg_attribute AS a
        JOIN pg_catalog.pg_class AS c ON a.attrelid = c.oid
        JOIN pg_catalog.pg_namespace AS n ON c.relnamespace = n.oid
        WHERE n.nspname = :schema
          AND c.relname = :table
          AND a.attname = :column
          AND a.attnum > 0
          AND NOT a.attisdropped
        UNION ALL
        SELECT t.typbasetype, t.typtypmod, chain.declared, chain.depth + 1
        FROM chain
        JOIN pg_catalog.pg_type AS t ON t.oid = chain.typid
        WHERE t.typtype = 'd'
    )
    SELECT chain.declared,
           CASE WHEN t.typtype = 'e' THEN 'anyenum'
                ELSE pg_catalog.format_type(chain.typid, chain.typmod)
           END
    FROM chain
    JOIN pg_catalog.pg_type AS t ON t.oid = chain.typid
    ORDER BY chain.depth DESC
    LIMIT 1
""")

_CURRENT_IDENTITY = text("""
    SELECT current_setting('role'),
           current_setting(:claim, true),
           current_setting('search_path')
""")

_SET_IDENTITY = text("""
    SELECT set_config('role', :role, true),
           set_config(:claim, :user_id, true)
""")

_SET_SEARCH_PATH = text("SELECT set_config('search_path', :search_path, true)")


def async_dsn(dsn: str) -> str:
    """Point a libpq-style DSN at the asyncpg driver.

    Example:
        >>> async_dsn("postgresql://localhost/app")
        'postgresql+asyncpg://localhost/app'
    """
    for prefix in ("postgresql://", "postgres://"):
        if dsn.startswith(prefix):
            return "postgresql+asyncpg://" + dsn[len(prefix):]
    return dsn


@dataclass(frozen=True)
class ExistenceQuery:
    """A row existence check built for one entity and key shape."""

    entity: Entity
    statement: TextClause
    params: tuple[str, ...]
    sql: str


class PostgresSession:
    """EvaluationSession over one AsyncSession."""

    def __init__(
        self,
        db: AsyncSession,
        engine: AsyncEngine,
        claim_setting: str = DEFAULT_CLAIM_SETTING,
    ) -> None:
        self._db = db
        self._preparer = engine.dialect.identifier_preparer
        self.claim_setting = claim_setting

    # Catalog

    async def resolve_entity(self, schema: str, table: str) -> Entity:
        try:
            row = (
                await self._db.execute(_RESOLVE_ENTITY, {"schema": schema, "table": table})
            ).first()
        except SQLAlchemyError as e:
            raise EntityResolutionError(schema, table, str(e)) from e
        if row is None:
            raise EntityResolutionError(schema, table, "relation does not exist")
        return Entity(schema, table, oid=int(row[0]))

    async def is_rls_enabled(self, entity: Entity) -> bool:
        row = (
            await self._db.execute(
                _RLS_ENABLED, {"schema": entity.schema, "table": entity.name}
            )
        ).first()
        if row is None:
            raise EntityResolutionError(entity.schema, entity.name, "relation was dropped")
        return bool(row[0])

    async def column_type(self, entity: Entity, column: str) -> str | None:
        row = await self._column_types(entity, column)
        return row[1] if row is not None else None

    async def _column_types(self, entity: Entity, column: str) -> Any:
        # (declared type, resolved type) or None
        async with self._db.begin_nested():
            return (
                await self._db.execute(
                    _COLUMN_TYPE,
                    {"schema": entity.schema, "table": entity.name, "column": column},
                )
            ).first()

    # Grants

    async def selectable_columns(self, entity: Entity, role: str) -> frozenset[str]:
        try:
            async with self._db.begin_nested():
                result = await self._db.execute(
                    _SELECTABLE_COLUMNS,
                    {"role": role, "schema": entity.schema, "table": entity.name},
                )
                return frozenset(result.scalars())
        except SQLAlchemyError as e:
            raise GrantLookupError(
                f"Failed to read column grants on {entity.qualified_name}: {e}",
                details={"entity": entity.qualified_name, "role": role},
            ) from e

    # Execution context

    async def current_identity(self) -> Identity:
        row = (await self._db.execute(_CURRENT_IDENTITY, {"claim": self.claim_setting})).one()
        # An unset claim reads back as NULL before first use and '' after a reset
        return Identity(role=row[0], user_id=row[1] or None, search_path=row[2])

    async def set_identity(self, identity: Identity) -> None:
        await self._db.execute(
            _SET_IDENTITY,
            {
                "role": identity.role,
                "claim": self.claim_setting,
                "user_id": identity.user_id or "",
            },
        )
        if identity.search_path is not None:
            await self._db.execute(_SET_SEARCH_PATH, {"search_path": identity.search_path})

    # Row existence

    async def prepare_existence_check(
        self, entity: Entity, primary_key: Sequence[PrimaryKeyColumn]
    ) -> ExistenceQuery:
        if not primary_key:
            raise StorageError(f"{entity.qualified_name} has no primary key")

        conditions = []
        params = []
        for i, pk in enumerate(primary_key):
            types = await self._column_types(entity, pk.name)
            if types is None:
                raise StorageError(
                    f'column "{pk.name}" of {entity.qualified_name} does not exist'
                )
            param = f"k{i}"
            column = self._preparer.quote_identifier(pk.name)
            conditions.append(f"{column} = CAST(CAST(:{param} AS text) AS {types[0]})")
            params.append(param)

        relation = (
            f"{self._preparer.quote_identifier(entity.schema)}."
            f"{self._preparer.quote_identifier(entity.name)}"
        )
        sql = f"SELECT EXISTS (SELECT 1 FROM {relation} WHERE {' AND '.join(conditions)})"
        logger.debug("Prepared existence check", extra={"entity": entity.qualified_name, "sql": sql})
        return ExistenceQuery(entity=entity, statement=text(sql), params=tuple(params), sql=sql)

    async def row_exists(self, handle: ExistenceQuery, values: Sequence[str | None]) -> bool:
        if len(values) != len(handle.params):
            raise StorageError(
                f"Expected {len(handle.params)} key values, got {len(values)}"
            )
        bound: dict[str, Any] = dict(zip(handle.params, values))
        async with self._db.begin_nested():
            result = await self._db.execute(handle.statement, bound)
            return bool(result.scalar())

    async def release_existence_check(self, handle: ExistenceQuery) -> None:
        # Statements are cached by the driver; nothing to deallocate
        logger.debug("Released existence check", extra={"entity": handle.entity.qualified_name})


class PostgresBackend:
    """Hands out PostgresSession objects backed by a connection pool.

    Example:
        >>> backend = PostgresBackend("postgresql://postgres@localhost/app")
        >>> async with backend.session() as session:
        ...     entity = await session.resolve_entity("public", "notes")
    """

    def __init__(
        self,
        dsn: str,
        claim_setting: str = DEFAULT_CLAIM_SETTING,
        pool_size: int = 10,
        max_overflow: int = 5,
        pool_recycle_s: int = 300,
        echo: bool = False,
    ) -> None:
        self.claim_setting = claim_setting
        self._engine = create_async_engine(
            async_dsn(dsn),
            echo=echo,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_pre_ping=True,
            pool_recycle=pool_recycle_s,
        )
        self._session_factory = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @classmethod
    def from_config(cls, config: Any) -> PostgresBackend:
        return cls(
            dsn=config.dsn,
            claim_setting=config.claim_setting,
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
            pool_recycle_s=config.pool_recycle_s,
            echo=config.echo,
        )

    @asynccontextmanager
    async def session(self) -> AsyncIterator[PostgresSession]:
        async with self._session_factory() as db:
            try:
                yield PostgresSession(db, self._engine, self.claim_setting)
            finally:
                await db.rollback()

    async def execute(self, sql: str, params: dict[str, Any] | None = None) -> None:
        """Run a statement in its own committed transaction (setup and tests)."""
        async with self._engine.begin() as conn:
            await conn.execute(text(sql), params or {})

    async def close(self) -> None:
        await self._engine.dispose()
        logger.info("PostgreSQL backend closed")
