"""
Unit tests for the equality evaluator.

Tests cover:
- Operator dispatch after coercion
- Total ordering for numeric types
- NULL handling
- Operator support per type
- Filter evaluation against change events
"""

import pytest

from realtime.walrus.visibility import equality
from realtime.walrus.visibility.errors import FilterCoercionError
from realtime.walrus.visibility.types import ChangeEvent, EqualityOp, Filter

from tests.conftest import notes_change


class TestEvaluate:
    """Tests for equality.evaluate."""

    def test_eq_after_coercion(self):
        """Equal coerced values compare equal regardless of spelling."""
        assert equality.evaluate(EqualityOp.EQ, "int4", "007", "7")
        assert equality.evaluate(EqualityOp.EQ, "numeric", "1.50", "1.5")
        assert not equality.evaluate(EqualityOp.NEQ, "int4", "7", "7")

    def test_orders_by_type_not_text(self):
        """Integers order numerically."""
        assert equality.evaluate(EqualityOp.GT, "integer", "10", "9")
        assert not equality.evaluate(EqualityOp.GT, "text", "10", "9")

    @pytest.mark.parametrize("type_name", ["int4", "int8", "numeric"])
    def test_one_unit_flips_ordering(self, type_name):
        """Moving an operand by one unit flips lt/gt consistently."""
        assert equality.evaluate(EqualityOp.LTE, type_name, "5", "5")
        assert equality.evaluate(EqualityOp.GTE, type_name, "5", "5")
        assert not equality.evaluate(EqualityOp.LT, type_name, "5", "5")

        assert equality.evaluate(EqualityOp.LT, type_name, "4", "5")
        assert not equality.evaluate(EqualityOp.GT, type_name, "4", "5")

        assert equality.evaluate(EqualityOp.GT, type_name, "6", "5")
        assert not equality.evaluate(EqualityOp.LT, type_name, "6", "5")

    def test_null_never_matches(self):
        """A NULL operand fails every operator."""
        for op in EqualityOp:
            assert not equality.evaluate(op, "int4", None, "1")
            assert not equality.evaluate(op, "int4", "1", None)

    def test_invalid_operand_raises(self):
        """Operands that do not coerce raise FilterCoercionError."""
        with pytest.raises(FilterCoercionError):
            equality.evaluate(EqualityOp.EQ, "int4", "abc", "1")

    def test_ordering_on_jsonb_unsupported(self):
        """jsonb only supports eq and neq."""
        assert equality.evaluate(EqualityOp.EQ, "jsonb", "[1, 2]", "[1,2]")
        with pytest.raises(FilterCoercionError):
            equality.evaluate(EqualityOp.LT, "jsonb", "1", "2")

    def test_timestamptz_compares_instants(self):
        """Timestamps in different zones compare by instant."""
        assert equality.evaluate(
            EqualityOp.EQ, "timestamptz", "2024-05-01 12:00:00+02", "2024-05-01T10:00:00Z"
        )

    def test_timestamptz_short_fraction(self):
        """Trimmed fractional seconds compare equal to their padded form."""
        assert equality.evaluate(
            EqualityOp.EQ,
            "timestamp with time zone",
            "2024-05-01 12:00:00.12+00",
            "2024-05-01T12:00:00.120000Z",
        )

    def test_float_nan_ordering(self):
        """NaN equals NaN and is greater than every number."""
        assert equality.evaluate(EqualityOp.EQ, "double precision", "NaN", "NaN")
        assert not equality.evaluate(EqualityOp.NEQ, "float8", "NaN", "NaN")
        assert equality.evaluate(EqualityOp.GT, "float8", "NaN", "Infinity")
        assert equality.evaluate(EqualityOp.LT, "float8", "1e308", "NaN")
        assert not equality.evaluate(EqualityOp.EQ, "float8", "NaN", "0")


class TestSupports:
    """Tests for equality.supports."""

    def test_equality_everywhere(self):
        """eq and neq are supported for all coercible types."""
        for type_name in ("int4", "text", "jsonb", "uuid", "bool"):
            assert equality.supports(EqualityOp.EQ, type_name)
            assert equality.supports(EqualityOp.NEQ, type_name)

    def test_ordering_only_on_orderable(self):
        """Ordering operators need an orderable type."""
        assert equality.supports(EqualityOp.GT, "timestamptz")
        assert not equality.supports(EqualityOp.GT, "jsonb")

    def test_unsupported_type_raises(self):
        """Unsupported types raise rather than answer."""
        with pytest.raises(FilterCoercionError):
            equality.supports(EqualityOp.EQ, "point")


class TestFilterAllows:
    """Tests for filter evaluation against a change."""

    @pytest.fixture
    def event(self):
        return ChangeEvent.from_dict(notes_change(pk1=28, body="walk the dog"))

    def test_matching_filter(self, event):
        """A matching filter lets the change through."""
        assert equality.filter_allows(Filter("pk1", EqualityOp.EQ, "28"), event)
        assert equality.filter_allows(Filter("pk1", EqualityOp.GT, "9"), event)

    def test_non_matching_filter(self, event):
        """A non-matching filter excludes the change."""
        assert not equality.filter_allows(
            Filter("body", EqualityOp.EQ, "take out the trash"), event
        )

    def test_empty_filters_allow(self, event):
        """An empty filter list always allows."""
        assert equality.filters_allow([], event)

    def test_all_filters_must_pass(self, event):
        """Filters are conjunctive."""
        filters = [
            Filter("pk1", EqualityOp.EQ, "28"),
            Filter("body", EqualityOp.NEQ, "walk the dog"),
        ]
        assert not equality.filters_allow(filters, event)

    def test_missing_column_raises(self, event):
        """A filter on a column absent from the change fails closed."""
        with pytest.raises(FilterCoercionError) as exc_info:
            equality.filter_allows(Filter("owner", EqualityOp.EQ, "x"), event)
        assert exc_info.value.column == "owner"

    def test_coercion_error_names_column(self):
        """Coercion errors are attributed to the filter's column."""
        event = ChangeEvent.from_dict(notes_change(pk1="not-a-number"))
        with pytest.raises(FilterCoercionError) as exc_info:
            equality.filter_allows(Filter("pk1", EqualityOp.EQ, "1"), event)
        assert exc_info.value.column == "pk1"
        assert exc_info.value.details["column"] == "pk1"

    def test_delete_uses_old_record(self):
        """Deletes are filtered on their old primary key values."""
        event = ChangeEvent.from_dict(notes_change(action="D", pk1=3, pk2="c"))
        assert equality.filter_allows(Filter("pk1", EqualityOp.EQ, "3"), event)
        assert not equality.filter_allows(Filter("pk2", EqualityOp.EQ, "d"), event)

    def test_null_column_value(self):
        """A NULL column value never matches."""
        event = ChangeEvent.from_dict(notes_change(body=None))
        assert not equality.filter_allows(Filter("body", EqualityOp.NEQ, "x"), event)

    def test_catalog_type_for_unknown_type(self):
        """Columns of domain or enum types are compared as their catalog type."""
        event = ChangeEvent.from_dict(
            notes_change(
                columns=[
                    {"name": "pk1", "type": "int4", "value": 1},
                    {"name": "pk2", "type": "bpchar", "value": "a"},
                    {"name": "status", "type": "note_status", "value": "open"},
                    {"name": "priority", "type": "positive_int", "value": 10},
                ]
            )
        )
        column_types = {"status": "anyenum", "priority": "integer"}

        assert equality.filters_allow(
            [
                Filter("status", EqualityOp.EQ, "open"),
                Filter("priority", EqualityOp.GT, "9"),
            ],
            event,
            column_types,
        )
        with pytest.raises(FilterCoercionError):
            equality.filter_allows(Filter("status", EqualityOp.EQ, "open"), event)
        with pytest.raises(FilterCoercionError):
            equality.filter_allows(Filter("status", EqualityOp.LT, "open"), event, column_types)

    def test_catalog_type_ignored_for_known_type(self):
        """A supported type carried by the change wins over the catalog."""
        event = ChangeEvent.from_dict(notes_change(pk1=10))
        assert equality.filter_allows(
            Filter("pk1", EqualityOp.GT, "9"), event, {"pk1": "text"}
        )
