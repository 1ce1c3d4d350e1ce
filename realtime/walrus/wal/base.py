"""
Base protocol and types for the change-feed stream.

Walrus reads raw change events from one topic and writes annotated changes
to another. Both sides go through the WalStream protocol so the worker does
not depend on the transport.

Invariants:
    - StreamPos uniquely identifies a record in the stream
    - Records with the same key are consumed in the order they were appended
    - A record is only committed after it has been fully handled

How to change safely:
    - Protocol changes require updating kafka.py and memory.py
    - Keep StreamRecord.value as raw bytes; decoding belongs to the consumer
"""

from __future__ import annotations

import json
import logging
from abc import abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..config import ServerConfig

logger = logging.getLogger(__name__)


class WalError(Exception):
    """Base exception for stream operations."""
    pass


class WalConnectionError(WalError):
    """Connection to the stream backend failed."""
    pass


class WalTimeoutError(WalError):
    """Stream operation timed out."""
    pass


class WalSerializationError(WalError):
    """Record value could not be decoded."""
    pass


@dataclass(frozen=True)
class StreamPos:
    """Position of a record in the stream.

    Attributes:
        topic: Topic name
        partition: Partition number
        offset: Offset within the partition
        timestamp_ms: Time the record was appended (milliseconds)
    """

    topic: str
    partition: int
    offset: int
    timestamp_ms: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "partition": self.partition,
            "offset": self.offset,
            "timestamp_ms": self.timestamp_ms,
        }

    def __str__(self) -> str:
        return f"{self.topic}:{self.partition}:{self.offset}"


@dataclass
class StreamRecord:
    """A record read from the stream.

    Attributes:
        key: Partition key (``schema.table`` for change events)
        value: Raw payload, JSON-encoded for change events
        position: Where the record sits in the stream
        headers: Optional transport headers
    """

    key: str
    value: bytes
    position: StreamPos
    headers: dict[str, bytes] = field(default_factory=dict)

    def value_json(self) -> Any:
        """Decode the value as UTF-8 JSON.

        Raises:
            WalSerializationError: If the value is not valid JSON
        """
        try:
            return json.loads(self.value.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise WalSerializationError(f"Failed to parse record value as JSON: {e}") from e

    def __str__(self) -> str:
        return f"StreamRecord(key={self.key}, pos={self.position})"


@runtime_checkable
class WalStream(Protocol):
    """Protocol for change-feed stream backends.

    Example:
        >>> stream = create_wal_stream(config)
        >>> await stream.connect()
        >>> async for record in stream.subscribe("walrus-changes", "walrus-worker"):
        ...     handle(record.value_json())
        ...     await stream.commit(record)
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the backend.

        Raises:
            WalConnectionError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Flush pending writes and release resources."""
        ...

    @abstractmethod
    async def append(
        self,
        topic: str,
        key: str,
        value: bytes,
        headers: dict[str, bytes] | None = None,
    ) -> StreamPos:
        """Append a record and wait for the backend to acknowledge it.

        Raises:
            WalConnectionError: If not connected
            WalTimeoutError: If the write times out
            WalError: For other write failures
        """
        ...

    @abstractmethod
    def subscribe(
        self,
        topic: str,
        group_id: str,
    ) -> AsyncIterator[StreamRecord]:
        """Consume a topic as part of a consumer group.

        Records are yielded in order within a partition. The caller must
        commit() each record once it has been handled.
        """
        ...

    @abstractmethod
    async def commit(self, record: StreamRecord) -> None:
        """Mark a consumed record (and everything before it) as handled.

        Raises:
            WalError: If the commit fails
        """
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        ...


def create_wal_stream(config: ServerConfig) -> WalStream:
    """Create the stream backend named by the configuration.

    Raises:
        ValueError: If the backend is not supported
    """
    from ..config import WalBackend

    if config.wal_backend == WalBackend.KAFKA:
        from .kafka import KafkaWalStream

        return KafkaWalStream(config.kafka)
    if config.wal_backend == WalBackend.MEMORY:
        from .memory import InMemoryWalStream

        return InMemoryWalStream()
    raise ValueError(f"Unsupported WAL backend: {config.wal_backend}")
