"""
Unit tests for validated subscription writes.

Tests cover:
- Create and update with filter validation
- No partial writes on rejection
- Unknown relations
"""

import pytest

from realtime.walrus.visibility.errors import EntityResolutionError, FilterError
from realtime.walrus.visibility.subscriptions import SubscriptionService
from realtime.walrus.visibility.types import EqualityOp, Filter
from realtime.walrus.visibility.validator import FilterValidator

from tests.conftest import ROLE


class TestSubscriptionService:
    """Tests for SubscriptionService."""

    @pytest.fixture
    def service(self, db, store):
        return SubscriptionService(db, store, FilterValidator(ROLE))

    @pytest.mark.asyncio
    async def test_create(self, service, store):
        """A valid subscription is stored."""
        sub = await service.create("U", "public", "notes", [Filter("pk1", EqualityOp.EQ, "1")])

        assert sub.entity.qualified_name == "public.notes"
        assert (await store.get(sub.id)).filters == (Filter("pk1", EqualityOp.EQ, "1"),)

    @pytest.mark.asyncio
    async def test_invalid_filter_not_written(self, service, store):
        """A rejected subscription leaves the store untouched."""
        with pytest.raises(FilterError):
            await service.create(
                "U",
                "public",
                "notes",
                [Filter("pk1", EqualityOp.EQ, "1"), Filter("secret", EqualityOp.EQ, "x")],
            )
        assert await store.count() == 0

    @pytest.mark.asyncio
    async def test_ungranted_column_rejected(self, service, db, store):
        """Filters cannot reference columns the role cannot read."""
        db.revoke_select("public", "notes", ROLE)
        db.grant_select("public", "notes", ROLE, ["pk1", "pk2"])

        with pytest.raises(FilterError) as exc_info:
            await service.create("U", "public", "notes", [Filter("body", EqualityOp.EQ, "x")])
        assert exc_info.value.column == "body"
        assert await store.count() == 0

    @pytest.mark.asyncio
    async def test_unknown_relation(self, service, store):
        """Subscriptions to relations that do not exist are rejected."""
        with pytest.raises(EntityResolutionError):
            await service.create("U", "public", "ghosts", [])
        assert await store.count() == 0

    @pytest.mark.asyncio
    async def test_update_filters(self, service):
        """Updates are validated against the subscription's relation."""
        sub = await service.create("U", "public", "notes", [])

        updated = await service.update_filters(sub.id, [Filter("pk2", EqualityOp.EQ, "a")])
        assert updated.filters == (Filter("pk2", EqualityOp.EQ, "a"),)

        with pytest.raises(FilterError):
            await service.update_filters(sub.id, [Filter("pk1", EqualityOp.EQ, "abc")])
        assert (await service.store.get(sub.id)).filters == updated.filters

    @pytest.mark.asyncio
    async def test_list_and_delete(self, service):
        """Subscriptions are listed per relation and can be deleted."""
        first = await service.create("U", "public", "notes", [])
        second = await service.create("V", "public", "notes", [])

        await service.delete(first.id)

        assert [s.id for s in await service.list_for_entity("public", "notes")] == [second.id]

    @pytest.mark.asyncio
    async def test_sessions_closed(self, service, db):
        """Every validation closes its storage session."""
        await service.create("U", "public", "notes", [Filter("pk1", EqualityOp.EQ, "1")])
        assert db.open_sessions == 0
        assert db.sessions_opened == 1
