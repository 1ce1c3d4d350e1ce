"""
In-memory change-feed stream for testing and local development.

Invariants:
    - All data is lost on process exit
    - Records with the same key land in the same partition, in append order
    - Committed offsets are tracked per consumer group

How to change safely:
    - Keep the interface compatible with the WalStream protocol
    - Never yield while holding the lock; consumers append from inside the loop
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from collections import defaultdict
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

from .base import StreamPos, StreamRecord, WalConnectionError, WalError

logger = logging.getLogger(__name__)


@dataclass
class InMemoryPartition:
    records: list[StreamRecord] = field(default_factory=list)


class InMemoryWalStream:
    """WalStream that keeps every topic in memory.

    Example:
        >>> stream = InMemoryWalStream()
        >>> await stream.connect()
        >>> await stream.append("walrus-changes", "public.notes", b"{...}")
        >>> async for record in stream.subscribe("walrus-changes", "walrus-worker"):
        ...     await stream.commit(record)
    """

    def __init__(self, num_partitions: int = 4, poll_interval_s: float = 0.5) -> None:
        self.num_partitions = num_partitions
        self.poll_interval_s = poll_interval_s
        self._topics: dict[str, dict[int, InMemoryPartition]] = defaultdict(
            lambda: {i: InMemoryPartition() for i in range(self.num_partitions)}
        )
        # group -> (topic, partition) -> next offset
        self._committed: dict[str, dict[tuple[str, int], int]] = defaultdict(dict)
        # topic -> (group, subscription token) currently consuming it
        self._consumers: dict[str, tuple[str, object]] = {}
        self._connected = False
        self._lock = asyncio.Lock()
        self._new_records = asyncio.Event()

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True
        logger.debug("InMemoryWalStream connected")

    async def close(self) -> None:
        """Stop all subscriptions. Data is kept so a test can inspect it."""
        self._connected = False
        self._consumers.clear()
        self._new_records.set()
        logger.debug("InMemoryWalStream closed")

    async def append(
        self,
        topic: str,
        key: str,
        value: bytes,
        headers: dict[str, bytes] | None = None,
    ) -> StreamPos:
        if not self._connected:
            raise WalConnectionError("Not connected")

        partition = self._partition_for_key(key)
        async with self._lock:
            part = self._topics[topic][partition]
            pos = StreamPos(
                topic=topic,
                partition=partition,
                offset=len(part.records),
                timestamp_ms=int(time.time() * 1000),
            )
            part.records.append(
                StreamRecord(key=key, value=value, position=pos, headers=headers or {})
            )
            self._new_records.set()

        logger.debug(
            "Record appended to in-memory stream",
            extra={"topic": topic, "key": key, "partition": partition, "offset": pos.offset},
        )
        return pos

    async def subscribe(self, topic: str, group_id: str) -> AsyncIterator[StreamRecord]:
        if not self._connected:
            raise WalConnectionError("Not connected")

        token = object()
        self._consumers[topic] = (group_id, token)
        committed = self._committed[group_id]
        positions = {p: committed.get((topic, p), 0) for p in range(self.num_partitions)}

        try:
            while self._connected and self._consumers.get(topic) == (group_id, token):
                async with self._lock:
                    pending = []
                    for partition, part in self._topics[topic].items():
                        pending.extend(part.records[positions[partition]:])
                        positions[partition] = len(part.records)
                    if not pending:
                        self._new_records.clear()

                for record in pending:
                    yield record

                if not pending:
                    try:
                        await asyncio.wait_for(self._new_records.wait(), self.poll_interval_s)
                    except asyncio.TimeoutError:
                        pass
        finally:
            if self._consumers.get(topic) == (group_id, token):
                del self._consumers[topic]

    async def commit(self, record: StreamRecord) -> None:
        pos = record.position
        consumer = self._consumers.get(pos.topic)
        if consumer is None:
            raise WalError(f"No active consumer for topic {pos.topic}")
        group_id = consumer[0]
        self._committed[group_id][(pos.topic, pos.partition)] = pos.offset + 1

    def _partition_for_key(self, key: str) -> int:
        digest = hashlib.md5(key.encode("utf-8")).digest()
        return int.from_bytes(digest[:4], "big") % self.num_partitions

    # Testing helpers

    def get_all_records(self, topic: str) -> list[StreamRecord]:
        """All records of a topic, partition by partition."""
        records: list[StreamRecord] = []
        for partition in sorted(self._topics.get(topic, {})):
            records.extend(self._topics[topic][partition].records)
        return records

    def get_record_count(self, topic: str) -> int:
        return sum(len(p.records) for p in self._topics.get(topic, {}).values())

    def committed_offset(self, group_id: str, topic: str, partition: int) -> int:
        return self._committed.get(group_id, {}).get((topic, partition), 0)

    def committed_count(self, group_id: str, topic: str) -> int:
        """Number of records committed by a group across partitions."""
        return sum(
            offset for (t, _), offset in self._committed.get(group_id, {}).items() if t == topic
        )

    async def wait_for_records(self, topic: str, count: int, timeout: float = 5.0) -> bool:
        """Wait until a topic holds at least ``count`` records."""
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if self.get_record_count(topic) >= count:
                return True
            await asyncio.sleep(0.01)
        return False
