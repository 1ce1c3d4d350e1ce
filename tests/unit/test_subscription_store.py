"""
Unit tests for the SQLite subscription store.

Tests cover:
- Create, update, delete and lookup
- Listing by entity in creation order
- Filter persistence
"""

import pytest

from realtime.walrus.storage.subscription_store import SubscriptionNotFoundError, SubscriptionStore
from realtime.walrus.visibility.types import Entity, EqualityOp, Filter

NOTES = Entity("public", "notes")
TODOS = Entity("public", "todos")


class TestSubscriptionStore:
    """Tests for SubscriptionStore."""

    @pytest.mark.asyncio
    async def test_create_and_get(self, store):
        """Created subscriptions can be read back with their filters."""
        filters = [Filter("body", EqualityOp.EQ, "take out the trash")]
        sub = await store.create("user-1", NOTES, filters)

        assert sub.id > 0
        assert sub.created_at > 0

        loaded = await store.get(sub.id)
        assert loaded.user_id == "user-1"
        assert loaded.entity == NOTES
        assert loaded.filters == tuple(filters)

    @pytest.mark.asyncio
    async def test_entity_oid_not_stored(self, store):
        """Subscriptions refer to relations by name only."""
        sub = await store.create("user-1", Entity("public", "notes", oid=16384), [])
        loaded = await store.get(sub.id)
        assert loaded.entity.oid is None
        assert loaded.entity == NOTES

    @pytest.mark.asyncio
    async def test_list_for_entity(self, store):
        """Listing returns only the entity's subscriptions, oldest first."""
        first = await store.create("user-1", NOTES, [])
        await store.create("user-2", TODOS, [])
        third = await store.create("user-3", NOTES, [])

        subs = await store.list_for_entity(NOTES)
        assert [s.id for s in subs] == [first.id, third.id]

    @pytest.mark.asyncio
    async def test_update_filters(self, store):
        """Filters are replaced wholesale."""
        sub = await store.create("user-1", NOTES, [Filter("pk1", EqualityOp.EQ, "1")])

        updated = await store.update_filters(sub.id, [Filter("pk2", EqualityOp.NEQ, "b")])

        assert updated.filters == (Filter("pk2", EqualityOp.NEQ, "b"),)
        assert updated.created_at == sub.created_at

    @pytest.mark.asyncio
    async def test_update_missing(self, store):
        """Updating a missing subscription raises."""
        with pytest.raises(SubscriptionNotFoundError):
            await store.update_filters(999, [])

    @pytest.mark.asyncio
    async def test_delete(self, store):
        """Deleted subscriptions are gone."""
        sub = await store.create("user-1", NOTES, [])
        await store.delete(sub.id)

        with pytest.raises(SubscriptionNotFoundError):
            await store.get(sub.id)
        with pytest.raises(SubscriptionNotFoundError):
            await store.delete(sub.id)

    @pytest.mark.asyncio
    async def test_list_all_and_count(self, store):
        """All subscriptions are listed up to the limit."""
        for i in range(5):
            await store.create(f"user-{i}", NOTES, [])

        assert await store.count() == 5
        assert len(await store.list_all()) == 5
        assert len(await store.list_all(limit=2)) == 2

    @pytest.mark.asyncio
    async def test_persists_across_instances(self, data_dir):
        """A second store on the same file sees existing subscriptions."""
        path = f"{data_dir}/nested/subscriptions.db"
        first = SubscriptionStore(path)
        first.initialize()
        sub = await first.create("user-1", NOTES, [])

        second = SubscriptionStore(path)
        second.initialize()
        assert (await second.get(sub.id)).user_id == "user-1"
