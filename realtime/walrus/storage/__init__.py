"""
Storage layer for walrus.

- base: Protocols the visibility engine evaluates against
- postgres: PostgreSQL backend (SQLAlchemy asyncio + asyncpg)
- memory: In-memory backend with RLS policies as Python predicates
- subscription_store: SQLite subscription registry

Invariants:
    - One EvaluationSession per change event, never shared
    - Sessions never commit; every evaluation is read-only
"""

from .base import (
    Catalog,
    EvaluationSession,
    ExecutionContext,
    GrantRegistry,
    Identity,
    RowExistenceProbe,
    StorageBackend,
    StorageError,
    SubscriptionRegistry,
)
from .memory import InMemoryDatabase, InMemorySession
from .subscription_store import SubscriptionNotFoundError, SubscriptionStore

__all__ = [
    "Catalog",
    "EvaluationSession",
    "ExecutionContext",
    "GrantRegistry",
    "Identity",
    "RowExistenceProbe",
    "StorageBackend",
    "StorageError",
    "SubscriptionRegistry",
    "InMemoryDatabase",
    "InMemorySession",
    "SubscriptionNotFoundError",
    "SubscriptionStore",
]
