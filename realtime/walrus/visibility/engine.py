"""
Visibility evaluation engine.

Takes one change event and produces the outgoing record: annotated with the
subscribers allowed to see it and stripped of the columns the authenticated
role cannot read.

Per event:
    Start        resolve the entity (fatal on failure), load the grant set once
    RLSCheck     RLS off: every subscriber sees the change
    Subscribers  RLS on: filters, then the row authorization oracle, per subscriber
    Redact       drop columns outside the grant set
    Annotate     add ``security``, strip ``pk``

Invariants:
    - A per-subscriber failure excludes that subscriber and nobody else
    - visible_to holds each user id at most once, in first-seen order
    - Filters run before the oracle so cheap rejections skip the database
    - Redaction happens for every event, whether RLS is enabled or not
    - IdentityRestorationFailure propagates out of evaluate()

How to change safely:
    - Any new per-subscriber step must record errors rather than raise
    - Keep the outgoing record built from a copy; the event is shared
"""

from __future__ import annotations

import logging
from typing import Any

from ..storage.base import EvaluationSession, SubscriptionRegistry
from .coercion import is_supported
from .equality import filters_allow
from .errors import (
    EntityResolutionError,
    FilterCoercionError,
    OracleExecutionError,
)
from .grants import GrantSet, load_grant_set, redact_columns
from .oracle import RowAuthorizationOracle
from .types import (
    Action,
    ChangeEvent,
    Entity,
    EvaluationResult,
    SecurityAnnotation,
    SubscriberError,
    Subscription,
)

logger = logging.getLogger(__name__)


class VisibilityEngine:
    """Evaluates change events against subscriptions, RLS and column grants.

    The engine holds no per-event state; all of it lives in the session
    passed to evaluate(), so one engine can serve concurrent evaluations
    on separate sessions.

    Example:
        >>> engine = VisibilityEngine(store, authenticated_role="authenticated")
        >>> async with backend.session() as session:
        ...     result = await engine.evaluate(event, session)
        >>> result.record["security"]
        {'is_rls_enabled': True, 'visible_to': ['user-1']}
    """

    def __init__(
        self,
        subscriptions: SubscriptionRegistry,
        authenticated_role: str = "authenticated",
    ) -> None:
        self.subscriptions = subscriptions
        self.authenticated_role = authenticated_role
        self.oracle = RowAuthorizationOracle(authenticated_role)

    async def evaluate(
        self,
        event: ChangeEvent,
        session: EvaluationSession,
    ) -> EvaluationResult:
        """Evaluate one change event.

        Args:
            event: The captured change
            session: Storage session dedicated to this evaluation

        Returns:
            EvaluationResult with the outgoing record and per-subscriber errors

        Raises:
            EntityResolutionError: If the event's relation cannot be resolved
            IdentityRestorationFailure: If impersonation could not be undone
        """
        entity, rls_enabled = await self._resolve(event, session)
        errors: list[SubscriberError] = []

        grants, grant_error = await load_grant_set(session, entity, self.authenticated_role)
        if grant_error is not None:
            errors.append(grant_error)

        subscriptions = await self.subscriptions.list_for_entity(entity)

        if not rls_enabled:
            visible_to = _unique_user_ids(subscriptions)
        elif event.action == Action.TRUNCATE:
            # No row to authorize against
            visible_to = ()
        else:
            visible_to = await self._authorize(event, entity, subscriptions, session, errors)

        record = self._build_record(event, grants, rls_enabled, visible_to)

        logger.debug(
            "Change evaluated",
            extra={
                "entity": entity.qualified_name,
                "action": event.action.value,
                "rls_enabled": rls_enabled,
                "subscriptions": len(subscriptions),
                "visible": len(visible_to),
                "errors": len(errors),
            },
        )

        return EvaluationResult(
            record=record,
            entity=entity,
            is_rls_enabled=rls_enabled,
            visible_to=visible_to,
            errors=errors,
        )

    async def _resolve(
        self,
        event: ChangeEvent,
        session: EvaluationSession,
    ) -> tuple[Entity, bool]:
        try:
            entity = await session.resolve_entity(event.schema, event.table)
            rls_enabled = await session.is_rls_enabled(entity)
        except EntityResolutionError:
            raise
        except Exception as e:
            raise EntityResolutionError(event.schema, event.table, str(e)) from e
        return entity, bool(rls_enabled)

    async def _authorize(
        self,
        event: ChangeEvent,
        entity: Entity,
        subscriptions: list[Subscription],
        session: EvaluationSession,
        errors: list[SubscriberError],
    ) -> tuple[str, ...]:
        visible: dict[str, None] = {}

        try:
            key_values: list[str | None] | None = event.primary_key_values()
            key_error = None
        except ValueError as e:
            key_values = None
            key_error = OracleExecutionError(str(e), details={"entity": entity.qualified_name})

        column_types = await self._catalog_types(event, entity, subscriptions, session)

        async with self.oracle.prepare(session, entity, event.primary_key) as check:
            for sub in subscriptions:
                if sub.user_id in visible:
                    continue

                try:
                    if not filters_allow(sub.filters, event, column_types):
                        continue
                except FilterCoercionError as e:
                    errors.append(_subscriber_error(e.code, e.message, sub))
                    continue

                if key_error is not None:
                    errors.append(_subscriber_error(key_error.code, key_error.message, sub))
                    continue

                try:
                    if await check.is_visible(session, sub.user_id, key_values):
                        visible[sub.user_id] = None
                except OracleExecutionError as e:
                    logger.warning(
                        "Authorization check failed, excluding subscriber",
                        extra={
                            "entity": entity.qualified_name,
                            "subscription_id": sub.id,
                            "user_id": sub.user_id,
                            "error": e.message,
                        },
                    )
                    errors.append(_subscriber_error(e.code, e.message, sub))

        return tuple(visible)

    async def _catalog_types(
        self,
        event: ChangeEvent,
        entity: Entity,
        subscriptions: list[Subscription],
        session: EvaluationSession,
    ) -> dict[str, str]:
        # Domains and enums arrive under their own names; look up what they compare as
        types: dict[str, str] = {}
        names = {f.column_name for sub in subscriptions for f in sub.filters}
        for name in sorted(names):
            found = event.value_for(name)
            if found is None or is_supported(found[0]):
                continue
            try:
                resolved = await session.column_type(entity, name)
            except Exception as e:
                logger.warning(
                    "Column type lookup failed",
                    extra={"entity": entity.qualified_name, "column": name, "error": str(e)},
                )
                continue
            if resolved is not None:
                types[name] = resolved
        return types

    def _build_record(
        self,
        event: ChangeEvent,
        grants: GrantSet,
        rls_enabled: bool,
        visible_to: tuple[str, ...],
    ) -> dict[str, Any]:
        record = event.to_dict()
        record["columns"] = [c.to_dict() for c in redact_columns(event.columns, grants)]
        record.pop("pk", None)
        record["security"] = SecurityAnnotation(
            is_rls_enabled=rls_enabled, visible_to=visible_to
        ).to_dict()
        return record


def _unique_user_ids(subscriptions: list[Subscription]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(sub.user_id for sub in subscriptions))


def _subscriber_error(kind: str, message: str, sub: Subscription) -> SubscriberError:
    return SubscriberError(
        kind=kind,
        message=message,
        subscription_id=sub.id,
        user_id=sub.user_id,
    )
