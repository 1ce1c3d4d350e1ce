"""
Validated subscription writes.

Every create and update goes through FilterValidator before it reaches the
store, inside a storage session so that the entity, its grants and its
column types are read consistently. A rejected filter leaves the store
untouched.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from ..storage.base import StorageBackend
from ..storage.subscription_store import SubscriptionStore
from .types import Entity, Filter, Subscription
from .validator import FilterValidator

logger = logging.getLogger(__name__)


class SubscriptionService:
    """Create, update and delete subscriptions with filter validation."""

    def __init__(
        self,
        backend: StorageBackend,
        store: SubscriptionStore,
        validator: FilterValidator,
    ) -> None:
        self.backend = backend
        self.store = store
        self.validator = validator

    async def create(
        self,
        user_id: str,
        schema: str,
        table: str,
        filters: Sequence[Filter] = (),
    ) -> Subscription:
        """Register a subscription.

        Raises:
            EntityResolutionError: If the relation does not exist
            FilterError: For the first invalid filter
        """
        entity = await self.validate(schema, table, filters)
        subscription = await self.store.create(user_id, entity, filters)
        logger.info(
            "Subscription created",
            extra={
                "subscription_id": subscription.id,
                "user_id": user_id,
                "entity": entity.qualified_name,
                "filters": len(filters),
            },
        )
        return subscription

    async def update_filters(
        self,
        subscription_id: int,
        filters: Sequence[Filter],
    ) -> Subscription:
        """Replace the filters of an existing subscription.

        Raises:
            SubscriptionNotFoundError: If the subscription does not exist
            FilterError: For the first invalid filter
        """
        current = await self.store.get(subscription_id)
        await self.validate(current.entity.schema, current.entity.name, filters)
        subscription = await self.store.update_filters(subscription_id, filters)
        logger.info(
            "Subscription filters updated",
            extra={"subscription_id": subscription_id, "filters": len(filters)},
        )
        return subscription

    async def delete(self, subscription_id: int) -> None:
        await self.store.delete(subscription_id)
        logger.info("Subscription deleted", extra={"subscription_id": subscription_id})

    async def validate(
        self,
        schema: str,
        table: str,
        filters: Sequence[Filter],
    ) -> Entity:
        """Resolve the relation and validate filters without writing."""
        async with self.backend.session() as session:
            entity = await session.resolve_entity(schema, table)
            await self.validator.validate(session, entity, filters)
        return entity

    async def list_for_entity(self, schema: str, table: str) -> list[Subscription]:
        return await self.store.list_for_entity(Entity(schema, table))
