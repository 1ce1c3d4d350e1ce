"""
Kafka/Redpanda change-feed stream.

Works with Apache Kafka, Amazon MSK, Redpanda or any Kafka API-compatible
system, through aiokafka.

Invariants:
    - Producer uses acks=all and idempotence, so an annotated change is
      durable before the source record is committed
    - Consumer uses manual commits; auto-commit would acknowledge records
      before they are evaluated

How to change safely:
    - Test against a real broker before deploying
    - Keep enable_auto_commit off for the worker's consumer group
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from typing import Any

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError, KafkaError, KafkaTimeoutError
from aiokafka.structs import OffsetAndMetadata, TopicPartition

from .base import (
    StreamPos,
    StreamRecord,
    WalConnectionError,
    WalError,
    WalTimeoutError,
)

logger = logging.getLogger(__name__)


class KafkaWalStream:
    """WalStream over aiokafka.

    Example:
        >>> stream = KafkaWalStream(KafkaConfig(brokers="localhost:9092"))
        >>> await stream.connect()
        >>> await stream.append("walrus-annotated", "public.notes", b'{"security": {...}}')
    """

    def __init__(self, config: Any) -> None:
        self.config = config
        self._producer: AIOKafkaProducer | None = None
        self._consumer: AIOKafkaConsumer | None = None
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected and self._producer is not None

    def _security_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {}
        if self.config.security_protocol != "PLAINTEXT":
            options["security_protocol"] = self.config.security_protocol
        if self.config.sasl_mechanism:
            options["sasl_mechanism"] = self.config.sasl_mechanism
            options["sasl_plain_username"] = self.config.sasl_username
            options["sasl_plain_password"] = self.config.sasl_password
        for name in ("ssl_cafile", "ssl_certfile", "ssl_keyfile"):
            value = getattr(self.config, name)
            if value:
                options[name] = value
        return options

    async def connect(self) -> None:
        """Start the producer.

        Raises:
            WalConnectionError: If the brokers cannot be reached
        """
        if self._connected:
            return

        try:
            self._producer = AIOKafkaProducer(
                bootstrap_servers=self.config.brokers,
                acks=self.config.acks,
                enable_idempotence=self.config.enable_idempotence,
                linger_ms=5,
                request_timeout_ms=30000,
                retry_backoff_ms=100,
                **self._security_options(),
            )
            await self._producer.start()
            self._connected = True
        except Exception as e:
            self._connected = False
            raise WalConnectionError(f"Failed to connect to Kafka: {e}") from e

        logger.info(
            "Connected to Kafka",
            extra={"brokers": self.config.brokers, "acks": self.config.acks},
        )

    async def close(self) -> None:
        if self._consumer:
            try:
                await self._consumer.stop()
            except KafkaError as e:
                logger.warning(f"Error closing consumer: {e}")
            self._consumer = None

        if self._producer:
            try:
                await self._producer.stop()
            except KafkaError as e:
                logger.warning(f"Error closing producer: {e}")
            self._producer = None

        self._connected = False
        logger.info("Kafka connections closed")

    async def append(
        self,
        topic: str,
        key: str,
        value: bytes,
        headers: dict[str, bytes] | None = None,
    ) -> StreamPos:
        if not self._producer:
            raise WalConnectionError("Not connected to Kafka")

        try:
            metadata = await self._producer.send_and_wait(
                topic,
                value=value,
                key=key.encode("utf-8"),
                headers=list(headers.items()) if headers else None,
            )
        except KafkaTimeoutError as e:
            raise WalTimeoutError(f"Kafka send timed out: {e}") from e
        except KafkaConnectionError as e:
            self._connected = False
            raise WalConnectionError(f"Kafka connection lost: {e}") from e
        except KafkaError as e:
            raise WalError(f"Kafka send failed: {e}") from e

        return StreamPos(
            topic=metadata.topic,
            partition=metadata.partition,
            offset=metadata.offset,
            timestamp_ms=metadata.timestamp or int(time.time() * 1000),
        )

    async def subscribe(self, topic: str, group_id: str) -> AsyncIterator[StreamRecord]:
        """Consume ``topic`` in ``group_id``, resuming from committed offsets.

        Raises:
            WalConnectionError: If the consumer cannot join the group
            WalError: For other consumer errors
        """
        try:
            if self._consumer:
                await self._consumer.stop()

            self._consumer = AIOKafkaConsumer(
                topic,
                bootstrap_servers=self.config.brokers,
                group_id=group_id,
                auto_offset_reset=self.config.auto_offset_reset,
                enable_auto_commit=self.config.enable_auto_commit,
                max_poll_records=100,
                session_timeout_ms=30000,
                heartbeat_interval_ms=10000,
                **self._security_options(),
            )
            await self._consumer.start()
            logger.info("Subscribed to Kafka topic", extra={"topic": topic, "group_id": group_id})

            async for msg in self._consumer:
                yield StreamRecord(
                    key=msg.key.decode("utf-8") if msg.key else "",
                    value=msg.value,
                    position=StreamPos(
                        topic=msg.topic,
                        partition=msg.partition,
                        offset=msg.offset,
                        timestamp_ms=msg.timestamp or int(time.time() * 1000),
                    ),
                    headers=dict(msg.headers) if msg.headers else {},
                )

        except KafkaConnectionError as e:
            raise WalConnectionError(f"Failed to subscribe: {e}") from e
        except KafkaError as e:
            raise WalError(f"Consumer error: {e}") from e

    async def commit(self, record: StreamRecord) -> None:
        if not self._consumer:
            raise WalError("No active consumer to commit")

        pos = record.position
        try:
            await self._consumer.commit(
                {TopicPartition(pos.topic, pos.partition): OffsetAndMetadata(pos.offset + 1, "")}
            )
        except KafkaError as e:
            raise WalError(f"Failed to commit: {e}") from e

        logger.debug(
            "Committed offset",
            extra={"topic": pos.topic, "partition": pos.partition, "offset": pos.offset},
        )
