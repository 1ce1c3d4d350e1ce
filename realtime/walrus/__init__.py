"""
Walrus - Write-Ahead-Log Row-Level Security for change streams.

Walrus annotates every row change captured from a database with the set of
subscribed users allowed to see it, and strips the columns the viewer role
cannot read. It enforces the same row-level security policies and column
grants the database applies to live queries, by asking the database itself.

Architecture:
    ┌──────────────┐     ┌──────────────────┐     ┌──────────────────┐
    │ Change feed  │────▶│ VisibilityWorker │────▶│ Annotated topic  │
    │ (Kafka/mem)  │     │                  │     │ (fan-out layer)  │
    └──────────────┘     └────────┬─────────┘     └──────────────────┘
                                  │ one session per event
                                  ▼
                        ┌──────────────────────┐
                        │   VisibilityEngine   │
                        │ filters → oracle →   │
                        │ redact → annotate    │
                        └────────┬─────────────┘
                                 │ impersonated existence checks
                                 ▼
                        ┌──────────────────────┐     ┌──────────────────┐
                        │ PostgreSQL (RLS,     │     │ SQLite           │
                        │ column grants)       │     │ subscriptions    │
                        └──────────────────────┘     └──────────────────┘

Invariants:
    - A subscriber never sees a change it could not read with a live query
    - Any failure on behalf of one subscriber excludes only that subscriber
    - The impersonated identity never outlives a single authorization check
    - User-defined filters are validated on write and never executed as SQL

How to change safely:
    - Keep the wire shape of input and output events stable
    - Add new coercible column types in visibility/coercion.py together with tests
    - Run the PostgreSQL suite (WALRUS_PG_DSN) before changing storage/postgres.py
"""

from ._version import __version__

__all__ = ["__version__"]
