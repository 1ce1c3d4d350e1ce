"""
Admin CLI for walrus.

This tool inspects and exercises visibility evaluation offline:
- evaluate: Annotate change events read from a file or stdin (nothing is published)
- validate: Check a filter list against a relation's grants and column types
- subscriptions: List the subscriptions registered for a relation

Usage:
    walrus evaluate change.json
    cat changes.json | walrus evaluate -
    walrus validate --schema public --table notes --filters '[{"column_name": "pk1", "op": "eq", "value": "1"}]'
    walrus subscriptions --schema public --table notes

Configuration comes from the same environment variables as the server
(POSTGRES_DSN, DATA_DIR, AUTHENTICATED_ROLE, ...).

Invariants:
    - Invalid filters and unresolvable relations cause a non-zero exit code
    - Output is JSON, one document per command
    - The CLI never publishes changes or modifies subscriptions

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep output format stable for scripting
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any

from ..config import ServerConfig
from ..storage.base import StorageBackend
from ..storage.postgres import PostgresBackend
from ..storage.subscription_store import SubscriptionStore
from ..visibility.engine import VisibilityEngine
from ..visibility.errors import EntityResolutionError, FilterError
from ..visibility.reporting import EvaluationReport
from ..visibility.types import ChangeEvent, Entity, Filter
from ..visibility.validator import FilterValidator

logger = logging.getLogger(__name__)


class WalrusCLI:
    """CLI operations over a storage backend and a subscription store.

    Example:
        >>> cli = WalrusCLI(backend, store)
        >>> reports = await cli.evaluate(json.load(f))
        >>> ok, error = await cli.validate("public", "notes", filters)
    """

    def __init__(
        self,
        backend: StorageBackend,
        store: SubscriptionStore,
        role: str = "authenticated",
    ) -> None:
        self.backend = backend
        self.store = store
        self.engine = VisibilityEngine(store, authenticated_role=role)
        self.validator = FilterValidator(role)

    async def evaluate(self, payload: Any) -> list[dict[str, Any]]:
        """Evaluate every change in ``payload``.

        Args:
            payload: A change event, a ``{"change": [...]}`` batch or a list of events

        Returns:
            One report dictionary per change

        Raises:
            ValueError: If an event is malformed
        """
        items = payload if isinstance(payload, list) else [payload]
        reports = []
        for item in items:
            for event in ChangeEvent.iter_from_payload(item):
                try:
                    async with self.backend.session() as session:
                        result = await self.engine.evaluate(event, session)
                except EntityResolutionError as e:
                    report = EvaluationReport.from_error(e.to_dict(), event.schema, event.table)
                else:
                    report = EvaluationReport.from_result(result)
                reports.append(report.to_dict())
        return reports

    async def validate(
        self,
        schema: str,
        table: str,
        filters: list[Filter],
    ) -> tuple[bool, dict[str, Any] | None]:
        """Validate filters for a relation.

        Returns:
            Tuple of (is_valid, error_dict)
        """
        try:
            async with self.backend.session() as session:
                entity = await session.resolve_entity(schema, table)
                await self.validator.validate(session, entity, filters)
        except (FilterError, EntityResolutionError) as e:
            return False, e.to_dict()
        return True, None

    async def subscriptions(self, schema: str, table: str) -> list[dict[str, Any]]:
        """List subscriptions for a relation."""
        subs = await self.store.list_for_entity(Entity(schema, table))
        return [s.to_dict() for s in subs]


def _read_payload(path: str) -> Any:
    if path == "-":
        return json.load(sys.stdin)
    with open(path) as f:
        return json.load(f)


def _parse_filters(raw: str) -> list[Filter]:
    data = json.loads(raw)
    if not isinstance(data, list):
        raise ValueError("--filters must be a JSON list")
    return [Filter.from_dict(f) for f in data]


async def _run(args: argparse.Namespace, config: ServerConfig) -> int:
    store = SubscriptionStore(
        config.storage.subscriptions_path,
        busy_timeout_ms=config.storage.busy_timeout_ms,
    )
    store.initialize()

    if args.command == "subscriptions":
        cli = WalrusCLI(backend=None, store=store)  # type: ignore[arg-type]
        print(json.dumps(await cli.subscriptions(args.schema, args.table), indent=2))
        return 0

    backend = PostgresBackend.from_config(config.postgres)
    try:
        cli = WalrusCLI(backend, store, role=config.engine.authenticated_role)

        if args.command == "evaluate":
            reports = await cli.evaluate(_read_payload(args.file))
            print(json.dumps(reports, indent=2))
            return 1 if any(r["errors"] for r in reports) else 0

        if args.command == "validate":
            ok, error = await cli.validate(args.schema, args.table, _parse_filters(args.filters))
            if ok:
                print(json.dumps({"valid": True}))
                return 0
            print(json.dumps({"valid": False, **(error or {})}, indent=2))
            return 1
    finally:
        await backend.close()

    return 2


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Walrus administration tool")
    subparsers = parser.add_subparsers(dest="command", required=True)

    evaluate_parser = subparsers.add_parser("evaluate", help="Evaluate change events")
    evaluate_parser.add_argument("file", help="JSON file with change events, or - for stdin")

    validate_parser = subparsers.add_parser("validate", help="Validate a filter list")
    validate_parser.add_argument("--schema", required=True, help="Schema of the relation")
    validate_parser.add_argument("--table", required=True, help="Name of the relation")
    validate_parser.add_argument("--filters", required=True, help="Filters as a JSON list")

    subs_parser = subparsers.add_parser("subscriptions", help="List subscriptions")
    subs_parser.add_argument("--schema", required=True, help="Schema of the relation")
    subs_parser.add_argument("--table", required=True, help="Name of the relation")

    args = parser.parse_args()

    logging.basicConfig(level=logging.WARNING, stream=sys.stderr)

    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        code = asyncio.run(_run(args, config))
    except (ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
