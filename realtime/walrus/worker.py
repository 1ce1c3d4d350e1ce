"""
Visibility worker.

Consumes raw change events from the change-feed topic, evaluates each one
on its own storage session and publishes the annotated record to the
output topic. It ensures:
- Every change is evaluated against the subscriptions and grants current
  at the time it is processed
- A change is committed only after its annotated record was published, or
  after it was found to be unprocessable and reported
- Processing stops if an impersonated identity could not be undone

Invariants:
    - Records are processed in stream order
    - One storage session per event, never shared between events
    - Per-event failures are logged and reported but don't block processing
    - IdentityRestorationFailure halts the worker without committing the record

How to change safely:
    - Any new failure mode must be classified as per-event (report, commit)
      or fatal (halt, don't commit)
    - Monitor error_count and the reporting view in production
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from .storage.base import StorageBackend
from .visibility.engine import VisibilityEngine
from .visibility.errors import (
    EntityResolutionError,
    IdentityRestorationFailure,
    WalrusError,
)
from .visibility.reporting import EvaluationReport, ReportLog
from .visibility.types import ChangeEvent, EvaluationResult
from .wal.base import StreamPos, StreamRecord, WalError, WalSerializationError, WalStream

logger = logging.getLogger(__name__)


class WorkerError(Exception):
    """The worker cannot continue."""

    pass


@dataclass
class ProcessResult:
    """Outcome of handling one stream record.

    Attributes:
        published: Number of annotated changes published
        failed: Number of changes that could not be evaluated
        reports: Reports recorded for the record's changes
    """

    published: int = 0
    failed: int = 0
    reports: list[EvaluationReport] = field(default_factory=list)


class VisibilityWorker:
    """Consume → evaluate → publish loop.

    Thread safety:
        Designed to run as a single task. Scale out with more consumers in
        the same group.

    Example:
        >>> worker = VisibilityWorker(wal, backend, engine, reports)
        >>> await worker.start()  # Runs until stopped
    """

    def __init__(
        self,
        wal: WalStream,
        backend: StorageBackend,
        engine: VisibilityEngine,
        reports: ReportLog | None = None,
        change_topic: str = "walrus-changes",
        output_topic: str = "walrus-annotated",
        group_id: str = "walrus-worker",
        retry_delay_ms: int = 1000,
        max_retries: int = 10,
    ) -> None:
        self.wal = wal
        self.backend = backend
        self.engine = engine
        self.reports = reports or ReportLog()
        self.change_topic = change_topic
        self.output_topic = output_topic
        self.group_id = group_id
        self.retry_delay_ms = retry_delay_ms
        self.max_retries = max_retries

        self._running = False
        self._halted: str | None = None
        self._processed_count = 0
        self._published_count = 0
        self._error_count = 0
        self._subscriber_error_count = 0
        self._last_position: StreamPos | None = None

    async def start(self) -> None:
        """Run the worker loop until stop() is called.

        Raises:
            IdentityRestorationFailure: If impersonation could not be undone
            WorkerError: If the stream keeps failing
        """
        if self._running:
            logger.warning("Worker already running")
            return

        self._running = True
        logger.info(
            "Starting visibility worker",
            extra={"topic": self.change_topic, "group_id": self.group_id},
        )

        failures = 0
        try:
            while self._running:
                try:
                    async for record in self.wal.subscribe(self.change_topic, self.group_id):
                        if not self._running:
                            break
                        await self._handle(record)
                        failures = 0
                    else:
                        # Stream ended (closed)
                        break
                except WalError as e:
                    failures += 1
                    if failures > self.max_retries:
                        raise WorkerError(f"Change stream failed {failures} times: {e}") from e
                    logger.warning(
                        "Change stream error, resubscribing",
                        extra={"error": str(e), "attempt": failures},
                    )
                    await asyncio.sleep(self.retry_delay_ms / 1000)

        except asyncio.CancelledError:
            logger.info("Visibility worker cancelled")
        except IdentityRestorationFailure as e:
            self._halted = e.message
            logger.critical(
                "Visibility worker halted: identity could not be restored",
                extra={"error": e.message, "last_position": str(self._last_position)},
            )
            raise
        except Exception as e:
            logger.error(f"Visibility worker error: {e}", exc_info=True)
            raise
        finally:
            self._running = False

    async def stop(self) -> None:
        self._running = False
        logger.info("Stopping visibility worker")

    async def _handle(self, record: StreamRecord) -> None:
        result = await self.process_record(record)
        self._processed_count += 1
        self._published_count += result.published
        self._error_count += result.failed

        await self.wal.commit(record)
        self._last_position = record.position

    async def evaluate_event(self, event: ChangeEvent) -> EvaluationResult:
        """Evaluate one change on a dedicated storage session.

        Raises:
            EntityResolutionError: If the relation cannot be resolved
            IdentityRestorationFailure: If impersonation could not be undone
        """
        async with self.backend.session() as session:
            return await self.engine.evaluate(event, session)

    async def process_record(self, record: StreamRecord) -> ProcessResult:
        """Evaluate and publish every change carried by a stream record.

        Raises:
            IdentityRestorationFailure: Never handled here; the record must
                not be committed
        """
        result = ProcessResult()

        try:
            events = list(ChangeEvent.iter_from_payload(record.value_json()))
        except (WalSerializationError, ValueError) as e:
            logger.error(
                "Malformed change record",
                extra={"position": str(record.position), "error": str(e)},
            )
            error = {"error": str(e), "error_code": "MALFORMED_RECORD"}
            self._report(result, EvaluationReport.from_error(error))
            result.failed += 1
            return result

        for event in events:
            try:
                evaluation = await self.evaluate_event(event)
            except IdentityRestorationFailure:
                raise
            except EntityResolutionError as e:
                logger.error(
                    "Change dropped: relation could not be resolved",
                    extra={"schema": e.schema, "table": e.table, "error": e.message},
                )
                report = EvaluationReport.from_error(e.to_dict(), event.schema, event.table)
                self._report(result, report)
                result.failed += 1
                continue
            except Exception as e:
                logger.error(
                    f"Error evaluating change: {e}",
                    extra={"schema": event.schema, "table": event.table},
                    exc_info=True,
                )
                if isinstance(e, WalrusError):
                    error = e.to_dict()
                else:
                    error = {"error": str(e), "error_code": type(e).__name__}
                self._report(result, EvaluationReport.from_error(error, event.schema, event.table))
                result.failed += 1
                continue

            await self.wal.append(
                self.output_topic,
                key=evaluation.entity.qualified_name,
                value=json.dumps(evaluation.record).encode("utf-8"),
            )
            result.published += 1
            self._subscriber_error_count += len(evaluation.errors)
            self._report(result, EvaluationReport.from_result(evaluation))

        return result

    def _report(self, result: ProcessResult, report: EvaluationReport) -> None:
        self.reports.record(report)
        result.reports.append(report)

    @property
    def stats(self) -> dict[str, Any]:
        """Worker statistics."""
        return {
            "running": self._running,
            "halted": self._halted,
            "processed_count": self._processed_count,
            "published_count": self._published_count,
            "error_count": self._error_count,
            "subscriber_error_count": self._subscriber_error_count,
            "last_position": str(self._last_position) if self._last_position else None,
        }
