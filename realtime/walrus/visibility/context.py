"""
Scoped impersonation of a subscriber on an execution context.

Authorization checks must run as the subscriber, and nothing else may ever
run as the subscriber. impersonating() switches the identity of one
execution context for the duration of an ``async with`` block and puts the
ambient identity back on the way out, whether the block succeeded or not.

Invariants:
    - The ambient identity is restored on every exit path
    - Restoration is verified by re-reading the identity
    - A failed or unverified restoration raises IdentityRestorationFailure,
      and that error is never converted into a per-subscriber error

How to change safely:
    - Never cache the ambient identity across blocks; capture it on entry
    - Any new identity dimension must be added to Identity so it is
      captured, restored and compared
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import replace

from ..storage.base import ExecutionContext, Identity
from .errors import IdentityRestorationFailure

logger = logging.getLogger(__name__)

__all__ = ["Identity", "impersonating"]


@asynccontextmanager
async def impersonating(
    context: ExecutionContext,
    user_id: str,
    role: str,
) -> AsyncIterator[Identity]:
    """Run the body as ``user_id`` acting in ``role``.

    Args:
        context: Execution context to switch
        user_id: Subscriber to impersonate
        role: Role the subscriber acts in

    Yields:
        The impersonated identity

    Raises:
        IdentityRestorationFailure: If the ambient identity could not be
            restored. Replaces any exception raised by the body.
    """
    ambient = await context.current_identity()
    impersonated = replace(ambient, role=role, user_id=user_id)

    try:
        await context.set_identity(impersonated)
        yield impersonated
    finally:
        await _restore(context, ambient)


async def _restore(context: ExecutionContext, ambient: Identity) -> None:
    try:
        await context.set_identity(ambient)
        current = await context.current_identity()
    except Exception as e:
        logger.critical(
            "Failed to restore ambient identity",
            extra={"role": ambient.role, "error": str(e)},
            exc_info=True,
        )
        raise IdentityRestorationFailure(
            f"Failed to restore identity to role '{ambient.role}': {e}"
        ) from e

    if current != ambient:
        logger.critical(
            "Ambient identity mismatch after restore",
            extra={"expected_role": ambient.role, "actual_role": current.role},
        )
        raise IdentityRestorationFailure(
            f"Identity after restore is role '{current.role}', expected '{ambient.role}'",
            details={"expected": ambient.role, "actual": current.role},
        )
