"""
Core data types for visibility evaluation.

This module defines the change event wire codec and the records the engine
works with:
- ChangeEvent: One captured row mutation (insert/update/delete/truncate)
- Filter / EqualityOp: User-defined single-column comparisons
- Subscription: A user's standing interest in an entity
- EvaluationResult: Annotated record plus per-subscriber errors

Wire shape of a change event:
    {
        "schema": "public",
        "table": "notes",
        "action": "I",
        "pk": [{"name": "id", "type": "bigint"}],
        "columns": [
            {"name": "id", "type": "bigint", "value": 28},
            {"name": "body", "type": "text", "value": "take out the trash"}
        ],
        "old_record": {"id": 28},
        "commit_timestamp": "2021-06-01T12:00:00Z"
    }

Invariants:
    - ChangeEvent instances are never mutated; annotation builds a new record
    - Unknown top-level keys are carried through to the output unchanged
    - Filter values are stored as text and only coerced at evaluation time

How to change safely:
    - New wire keys must be optional
    - Keep to_dict() the exact inverse of from_dict() for known keys
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .coercion import to_text


class Action(Enum):
    """Kind of captured mutation, keyed by its wire letter."""

    INSERT = "I"
    UPDATE = "U"
    DELETE = "D"
    TRUNCATE = "T"


class EqualityOp(Enum):
    """Comparison operators allowed in user-defined filters."""

    EQ = "eq"
    NEQ = "neq"
    LT = "lt"
    LTE = "lte"
    GT = "gt"
    GTE = "gte"


@dataclass(frozen=True)
class Entity:
    """A relation identified by schema and name.

    Attributes:
        schema: Schema (namespace) name
        name: Relation name
        oid: Catalog object id, when resolved against a live catalog
    """

    schema: str
    name: str
    oid: int | None = field(default=None, compare=False)

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.name}"

    def __str__(self) -> str:
        return self.qualified_name


@dataclass(frozen=True)
class ColumnDescriptor:
    """A column as carried in a change event.

    The value is opaque to the engine; it is only ever interpreted through
    type-aware coercion.
    """

    name: str
    type: str
    value: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "type": self.type, "value": self.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ColumnDescriptor:
        if not isinstance(data, dict) or "name" not in data or "type" not in data:
            raise ValueError(f"Invalid column descriptor: {data!r}")
        return cls(name=data["name"], type=data["type"], value=data.get("value"))


@dataclass(frozen=True)
class PrimaryKeyColumn:
    """Name and type of one primary key column."""

    name: str
    type: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "type": self.type}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PrimaryKeyColumn:
        if not isinstance(data, dict) or "name" not in data or "type" not in data:
            raise ValueError(f"Invalid primary key descriptor: {data!r}")
        return cls(name=data["name"], type=data["type"])


@dataclass(frozen=True)
class Filter:
    """A single-column comparison a subscriber applies to changes.

    Attributes:
        column_name: Column the filter reads
        op: Comparison operator
        value: Right-hand operand, kept as uninterpreted text
    """

    column_name: str
    op: EqualityOp
    value: str

    def to_dict(self) -> dict[str, str]:
        return {"column_name": self.column_name, "op": self.op.value, "value": self.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Filter:
        """Create from dictionary.

        Raises:
            ValueError: If a key is missing or the operator is unknown
        """
        if not isinstance(data, dict):
            raise ValueError(f"Filter must be an object, got {type(data).__name__}")

        missing = [k for k in ("column_name", "op", "value") if k not in data]
        if missing:
            raise ValueError(f"Filter is missing fields: {missing}")

        try:
            op = EqualityOp(data["op"])
        except ValueError:
            valid = [o.value for o in EqualityOp]
            raise ValueError(f"Invalid filter op '{data['op']}', must be one of {valid}")

        value = to_text(data["value"])
        if value is None:
            raise ValueError(f"Filter value for '{data['column_name']}' must not be null")

        return cls(column_name=str(data["column_name"]), op=op, value=value)


@dataclass(frozen=True)
class Subscription:
    """A user's registration of interest in an entity's changes."""

    id: int
    user_id: str
    entity: Entity
    filters: tuple[Filter, ...] = ()
    created_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "schema": self.entity.schema,
            "table": self.entity.name,
            "filters": [f.to_dict() for f in self.filters],
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class ChangeEvent:
    """One captured row mutation.

    Attributes:
        schema: Schema of the changed relation
        table: Name of the changed relation
        action: Kind of mutation
        columns: Column values after the change
        primary_key: Primary key column names and types
        old_record: Primary key values before the change (updates/deletes)
        commit_timestamp: ISO-8601 commit time, when the feed provides it
        extra: Unrecognized top-level keys, passed through unchanged
    """

    schema: str
    table: str
    action: Action
    columns: tuple[ColumnDescriptor, ...] = ()
    primary_key: tuple[PrimaryKeyColumn, ...] = ()
    old_record: dict[str, Any] | None = None
    commit_timestamp: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    _KNOWN_KEYS = frozenset(
        {"schema", "table", "action", "pk", "columns", "old_record", "commit_timestamp"}
    )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChangeEvent:
        """Parse the wire representation.

        Raises:
            ValueError: If required fields are missing or malformed
        """
        if not isinstance(data, dict):
            raise ValueError(f"Change event must be an object, got {type(data).__name__}")

        missing = [k for k in ("schema", "table", "action") if k not in data]
        if missing:
            raise ValueError(f"Missing required fields: {missing}")

        try:
            action = Action(data["action"])
        except ValueError:
            raise ValueError(f"Invalid action: {data['action']!r}")

        columns = data.get("columns") or []
        pk = data.get("pk") or []
        if not isinstance(columns, list) or not isinstance(pk, list):
            raise ValueError("'columns' and 'pk' must be lists")

        old_record = data.get("old_record")
        if old_record is not None and not isinstance(old_record, dict):
            raise ValueError("'old_record' must be an object")

        return cls(
            schema=data["schema"],
            table=data["table"],
            action=action,
            columns=tuple(ColumnDescriptor.from_dict(c) for c in columns),
            primary_key=tuple(PrimaryKeyColumn.from_dict(p) for p in pk),
            old_record=old_record,
            commit_timestamp=data.get("commit_timestamp"),
            extra={k: v for k, v in data.items() if k not in cls._KNOWN_KEYS},
        )

    @classmethod
    def iter_from_payload(cls, payload: Any) -> Iterator[ChangeEvent]:
        """Yield events from a single change or a ``{"change": [...]}`` batch."""
        if isinstance(payload, dict) and isinstance(payload.get("change"), list):
            for item in payload["change"]:
                yield cls.from_dict(item)
        else:
            yield cls.from_dict(payload)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "schema": self.schema,
            "table": self.table,
            "action": self.action.value,
            "pk": [p.to_dict() for p in self.primary_key],
            "columns": [c.to_dict() for c in self.columns],
        }
        if self.old_record is not None:
            data["old_record"] = dict(self.old_record)
        if self.commit_timestamp is not None:
            data["commit_timestamp"] = self.commit_timestamp
        data.update(self.extra)
        return data

    def column(self, name: str) -> ColumnDescriptor | None:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    @property
    def column_names(self) -> frozenset[str]:
        return frozenset(c.name for c in self.columns)

    def value_for(self, name: str) -> tuple[str, Any] | None:
        """Find the (type, value) of a column.

        Looks in the new column values first, then falls back to the old
        primary key values, which are all a delete carries.
        """
        col = self.column(name)
        if col is not None:
            return col.type, col.value

        if self.old_record and name in self.old_record:
            for pk in self.primary_key:
                if pk.name == name:
                    return pk.type, self.old_record[name]
        return None

    def primary_key_values(self) -> list[str | None]:
        """Primary key values as text, in primary key order.

        Raises:
            ValueError: If the event has no primary key or a key value is absent
        """
        if not self.primary_key:
            raise ValueError(f"{self.schema}.{self.table} change carries no primary key")

        values = []
        for pk in self.primary_key:
            found = self.value_for(pk.name)
            if found is None:
                raise ValueError(f"Missing value for primary key column '{pk.name}'")
            values.append(to_text(found[1]))
        return values


@dataclass(frozen=True)
class SecurityAnnotation:
    """The ``security`` block added to every outgoing change."""

    is_rls_enabled: bool
    visible_to: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {"is_rls_enabled": self.is_rls_enabled, "visible_to": list(self.visible_to)}


@dataclass(frozen=True)
class SubscriberError:
    """A failure recorded on behalf of one subscription.

    The subscriber is excluded from the change whenever one of these is
    recorded.
    """

    kind: str
    message: str
    subscription_id: int | None = None
    user_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "message": self.message,
            "subscription_id": self.subscription_id,
            "user_id": self.user_id,
        }


@dataclass
class EvaluationResult:
    """Result of evaluating one change event.

    Attributes:
        record: Outgoing wire record (redacted, annotated, without ``pk``)
        entity: The resolved relation
        is_rls_enabled: Whether oracle-based filtering took place
        visible_to: User ids authorized to see the change
        errors: Per-subscriber and grant lookup failures (never sent on the wire)
    """

    record: dict[str, Any]
    entity: Entity
    is_rls_enabled: bool
    visible_to: tuple[str, ...]
    errors: list[SubscriberError] = field(default_factory=list)
