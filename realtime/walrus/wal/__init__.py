"""
Change-feed stream abstraction for walrus.

This module provides a pluggable stream interface supporting:
- Kafka/Redpanda (production)
- In-memory (for testing and local development)

The worker consumes raw changes from one topic and publishes annotated
changes to another through the same stream.

Invariants:
    - append() returns only after durable storage is confirmed
    - Changes to one relation share a key and therefore a partition
    - Consumers receive records in order within a partition

How to change safely:
    - New backends must implement WalStream protocol
    - Kafka is imported lazily by create_wal_stream() so the in-memory
      stream works without a broker client configured
"""

from .base import (
    StreamPos,
    StreamRecord,
    WalConnectionError,
    WalError,
    WalSerializationError,
    WalStream,
    WalTimeoutError,
    create_wal_stream,
)
from .memory import InMemoryWalStream

__all__ = [
    # Protocol and types
    "WalStream",
    "StreamRecord",
    "StreamPos",
    "WalError",
    "WalConnectionError",
    "WalTimeoutError",
    "WalSerializationError",
    # Factory
    "create_wal_stream",
    # Implementations
    "InMemoryWalStream",
]
