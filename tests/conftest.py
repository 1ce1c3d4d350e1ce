"""
Shared fixtures for walrus tests.

Most tests run against the in-memory storage backend with one relation:

    notes(pk1 int, pk2 char, body text), RLS enabled

Its policy lets a user see a row when the user id is listed for the row's
key in the ``readers`` fixture.
"""

import tempfile
from typing import Any

import pytest

from realtime.walrus.storage.memory import InMemoryDatabase
from realtime.walrus.storage.subscription_store import SubscriptionStore
from realtime.walrus.visibility.types import ChangeEvent

ROLE = "authenticated"

NOTES_COLUMNS = {"pk1": "int4", "pk2": "bpchar", "body": "text"}


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def store(data_dir):
    """Create an initialized subscription store."""
    store = SubscriptionStore(f"{data_dir}/subscriptions.db")
    store.initialize()
    return store


@pytest.fixture
def readers():
    """(pk1, pk2) -> user ids the notes policy lets through."""
    return {}


@pytest.fixture
def db(readers):
    """In-memory database holding the notes table."""
    db = InMemoryDatabase()
    db.create_table("public", "notes", NOTES_COLUMNS, ["pk1", "pk2"], rls_enabled=True)
    db.grant_select("public", "notes", ROLE)
    db.add_policy(
        "public",
        "notes",
        lambda ident, row: ident.user_id in readers.get((row["pk1"], row["pk2"]), ()),
    )
    db.insert_row("public", "notes", {"pk1": 1, "pk2": "a", "body": "walk the dog"})
    db.insert_row("public", "notes", {"pk1": 2, "pk2": "b", "body": "take out the trash"})
    return db


def notes_change(
    action: str = "U",
    pk1: Any = 1,
    pk2: Any = "a",
    body: Any = "walk the dog",
    **extra: Any,
) -> dict[str, Any]:
    """Wire representation of a change to the notes table."""
    change: dict[str, Any] = {
        "schema": "public",
        "table": "notes",
        "action": action,
        "pk": [{"name": "pk1", "type": "int4"}, {"name": "pk2", "type": "bpchar"}],
        "columns": [
            {"name": "pk1", "type": "int4", "value": pk1},
            {"name": "pk2", "type": "bpchar", "value": pk2},
            {"name": "body", "type": "text", "value": body},
        ],
        "commit_timestamp": "2024-05-01T12:00:00Z",
    }
    if action == "D":
        change["columns"] = []
        change["old_record"] = {"pk1": pk1, "pk2": pk2}
    if action == "T":
        change["pk"] = []
        change["columns"] = []
    change.update(extra)
    return change


@pytest.fixture
def make_change():
    """Factory for notes change events."""

    def make(**kwargs: Any) -> ChangeEvent:
        return ChangeEvent.from_dict(notes_change(**kwargs))

    return make
