"""
Visibility evaluation for walrus.

- types: Change events, filters, subscriptions and the evaluation result
- coercion / equality: Typed comparison of text-encoded values
- grants: Column grants and redaction
- validator: Write-time filter validation
- context / oracle: Impersonated row existence checks
- engine: Per-event evaluation
- reporting: Recent evaluations for operators

Only the leaf modules are re-exported here; the engine and its
collaborators depend on the storage protocols and are imported from their
own modules.
"""

from .errors import (
    EntityResolutionError,
    FilterCoercionError,
    FilterError,
    GrantLookupError,
    IdentityRestorationFailure,
    OracleExecutionError,
    WalrusError,
)
from .types import (
    Action,
    ChangeEvent,
    ColumnDescriptor,
    Entity,
    EqualityOp,
    EvaluationResult,
    Filter,
    PrimaryKeyColumn,
    SecurityAnnotation,
    SubscriberError,
    Subscription,
)

__all__ = [
    # Errors
    "WalrusError",
    "EntityResolutionError",
    "GrantLookupError",
    "FilterError",
    "FilterCoercionError",
    "OracleExecutionError",
    "IdentityRestorationFailure",
    # Types
    "Action",
    "ChangeEvent",
    "ColumnDescriptor",
    "Entity",
    "EqualityOp",
    "EvaluationResult",
    "Filter",
    "PrimaryKeyColumn",
    "SecurityAnnotation",
    "SubscriberError",
    "Subscription",
]
