"""
Unit tests for the evaluation reporting view.

Tests cover:
- Report construction from results and errors
- Bounded log eviction
- Filtering and ordering of recent reports
"""

import pytest

from realtime.walrus.visibility.reporting import EvaluationReport, ReportLog
from realtime.walrus.visibility.types import Entity, EvaluationResult, SubscriberError


def _result(table="notes", visible=("U",)):
    return EvaluationResult(
        record={"schema": "public", "table": table, "security": {}},
        entity=Entity("public", table),
        is_rls_enabled=True,
        visible_to=tuple(visible),
        errors=[SubscriberError("ORACLE_EXECUTION_ERROR", "boom", 7, "bob")],
    )


class TestEvaluationReport:
    """Tests for EvaluationReport."""

    def test_from_result(self):
        """visible_to is exposed as subscription_ids, with errors."""
        report = EvaluationReport.from_result(_result())
        data = report.to_dict()

        assert data["subscription_ids"] == ["U"]
        assert data["is_rls_enabled"] is True
        assert data["errors"] == [
            {
                "kind": "ORACLE_EXECUTION_ERROR",
                "message": "boom",
                "subscription_id": 7,
                "user_id": "bob",
            }
        ]
        assert data["schema"] == "public"
        assert data["table"] == "notes"
        assert data["evaluated_at"] > 0

    def test_from_error(self):
        """Unevaluated changes carry only the error."""
        report = EvaluationReport.from_error({"error": "x"}, "public", "ghosts")
        assert report.record is None
        assert report.subscription_ids == []
        assert report.errors == [{"error": "x"}]


class TestReportLog:
    """Tests for ReportLog."""

    def test_capacity_must_be_positive(self):
        """A log must hold at least one report."""
        with pytest.raises(ValueError):
            ReportLog(capacity=0)

    def test_oldest_evicted(self):
        """The log keeps only the most recent reports."""
        log = ReportLog(capacity=3)
        for i in range(5):
            log.record(EvaluationReport.from_error({"n": i}))

        assert len(log) == 3
        assert log.total == 5
        assert [r.errors[0]["n"] for r in log.recent()] == [4, 3, 2]

    def test_recent_limit(self):
        """recent() returns at most ``limit`` reports."""
        log = ReportLog()
        for _ in range(10):
            log.record(EvaluationReport.from_result(_result()))
        assert len(log.recent(limit=4)) == 4

    def test_recent_by_relation(self):
        """Reports can be narrowed to one relation."""
        log = ReportLog()
        log.record(EvaluationReport.from_result(_result("notes")))
        log.record(EvaluationReport.from_result(_result("todos")))
        log.record(EvaluationReport.from_result(_result("notes")))

        notes = log.recent(schema="public", table="notes")
        assert len(notes) == 2
        assert all(r.table == "notes" for r in notes)
        assert log.recent(schema="other") == []
