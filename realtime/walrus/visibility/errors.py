"""
Error types for visibility evaluation.

This module defines every exception raised while evaluating a change:
- WalrusError: Base exception
- EntityResolutionError: Change cannot be attributed to a relation (fatal for the event)
- GrantLookupError: Column grants could not be read (treated as "no visible columns")
- FilterError: Subscription filter rejected at write time
- FilterCoercionError: Filter could not be evaluated for one subscriber
- OracleExecutionError: Authorization check failed for one subscriber
- IdentityRestorationFailure: Impersonated identity could not be reverted

Invariants:
    - All errors inherit from WalrusError
    - Per-subscriber errors never widen visibility
    - IdentityRestorationFailure is never caught by per-subscriber handlers
"""

from __future__ import annotations

from typing import Any


class WalrusError(Exception):
    """Base exception for all walrus errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    code = "WALRUS_ERROR"

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for reports and API responses."""
        return {
            "error": self.message,
            "error_code": self.code,
            **self.details,
        }


class EntityResolutionError(WalrusError):
    """Change event does not resolve to an existing relation.

    Raised when:
    - The schema or table no longer exists
    - The catalog lookup itself fails
    """

    code = "ENTITY_RESOLUTION_ERROR"

    def __init__(self, schema: str, table: str, reason: str | None = None) -> None:
        message = f"Failed to resolve relation {schema}.{table}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, details={"schema": schema, "table": table})
        self.schema = schema
        self.table = table


class GrantLookupError(WalrusError):
    """Column grants for a role could not be read."""

    code = "GRANT_LOOKUP_ERROR"


class FilterError(WalrusError):
    """A subscription filter is invalid.

    Raised synchronously on subscription create/update for the first
    invalid filter encountered.
    """

    code = "FILTER_ERROR"

    def __init__(self, column: str, reason: str) -> None:
        super().__init__(
            f"Invalid filter on column '{column}': {reason}",
            details={"column": column, "reason": reason},
        )
        self.column = column
        self.reason = reason


class FilterCoercionError(WalrusError):
    """A value could not be coerced to a column type, or the type does not
    support the requested comparison."""

    code = "FILTER_COERCION_ERROR"

    def __init__(
        self,
        message: str,
        type_name: str | None = None,
        column: str | None = None,
    ) -> None:
        super().__init__(message, details={"type": type_name, "column": column})
        self.type_name = type_name
        self.column = column


class OracleExecutionError(WalrusError):
    """The row authorization check could not be executed."""

    code = "ORACLE_EXECUTION_ERROR"


class IdentityRestorationFailure(WalrusError):
    """The ambient identity could not be restored after impersonation.

    The execution context is in an unknown identity. Processing on it
    must stop.
    """

    code = "IDENTITY_RESTORATION_FAILURE"
