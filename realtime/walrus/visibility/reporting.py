"""
Reporting view of recent evaluations.

Operators need to see why a subscriber did or did not receive a change.
Every evaluation is summarized as an EvaluationReport, which, unlike the
outgoing record, carries the per-subscriber errors. Reports are kept in a
bounded in-memory log; the oldest are dropped first.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from .types import EvaluationResult


@dataclass
class EvaluationReport:
    """One evaluated change as shown to operators.

    Attributes:
        record: Outgoing record (None if the event could not be evaluated)
        is_rls_enabled: Whether the oracle was consulted
        subscription_ids: User ids the change was delivered to
        errors: Per-subscriber and event-level errors
        schema: Schema of the changed relation
        table: Name of the changed relation
        evaluated_at: Wall clock time of evaluation (milliseconds)
    """

    record: dict[str, Any] | None
    is_rls_enabled: bool
    subscription_ids: list[str]
    errors: list[dict[str, Any]]
    schema: str | None = None
    table: str | None = None
    evaluated_at: int = field(default_factory=lambda: int(time.time() * 1000))

    @classmethod
    def from_result(cls, result: EvaluationResult) -> EvaluationReport:
        return cls(
            record=result.record,
            is_rls_enabled=result.is_rls_enabled,
            subscription_ids=list(result.visible_to),
            errors=[e.to_dict() for e in result.errors],
            schema=result.entity.schema,
            table=result.entity.name,
        )

    @classmethod
    def from_error(
        cls,
        error: dict[str, Any],
        schema: str | None = None,
        table: str | None = None,
    ) -> EvaluationReport:
        """Report for a change that could not be evaluated at all."""
        return cls(
            record=None,
            is_rls_enabled=False,
            subscription_ids=[],
            errors=[error],
            schema=schema,
            table=table,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema": self.schema,
            "table": self.table,
            "record": self.record,
            "is_rls_enabled": self.is_rls_enabled,
            "subscription_ids": self.subscription_ids,
            "errors": self.errors,
            "evaluated_at": self.evaluated_at,
        }


class ReportLog:
    """Bounded, thread-safe log of recent evaluation reports."""

    def __init__(self, capacity: int = 1000) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._reports: deque[EvaluationReport] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self.total = 0

    def record(self, report: EvaluationReport) -> None:
        with self._lock:
            self._reports.append(report)
            self.total += 1

    def recent(
        self,
        limit: int = 100,
        schema: str | None = None,
        table: str | None = None,
    ) -> list[EvaluationReport]:
        """Most recent reports first, optionally for one relation."""
        with self._lock:
            reports = list(self._reports)

        matched = []
        for report in reversed(reports):
            if schema is not None and report.schema != schema:
                continue
            if table is not None and report.table != table:
                continue
            matched.append(report)
            if len(matched) >= limit:
                break
        return matched

    def __len__(self) -> int:
        return len(self._reports)
