"""
HTTP API for walrus.

Endpoints:
    POST   /v1/subscriptions           Create a subscription (filters validated)
    PUT    /v1/subscriptions/{id}      Replace a subscription's filters
    DELETE /v1/subscriptions/{id}      Delete a subscription
    GET    /v1/subscriptions           List subscriptions (?schema=&table=)
    GET    /v1/reports                 Recent evaluations (?limit=&schema=&table=)
    POST   /v1/evaluate                Evaluate one change without publishing it
    GET    /v1/health                  Worker statistics

Invariants:
    - JSON request/response format
    - Errors carry {"error", "error_code", ...details}
    - An invalid filter is rejected with 400 and nothing is written

How to change safely:
    - Version the API (/v2) for breaking changes
    - Keep error bodies produced by WalrusError.to_dict()
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any

from aiohttp import web

from ..storage.subscription_store import SubscriptionNotFoundError
from ..visibility.errors import EntityResolutionError, FilterError, WalrusError
from ..visibility.reporting import EvaluationReport, ReportLog
from ..visibility.subscriptions import SubscriptionService
from ..visibility.types import ChangeEvent, Filter

logger = logging.getLogger(__name__)

MAX_REPORT_LIMIT = 1000


def _error(status: int, message: str, code: str = "BAD_REQUEST", **details: Any) -> web.Response:
    return web.json_response({"error": message, "error_code": code, **details}, status=status)


async def _json_body(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        # JSONDecodeError and UnicodeDecodeError
        raise _bad_request("Invalid JSON body")
    if not isinstance(body, dict):
        raise _bad_request("JSON body must be an object")
    return body


def _parse_filters(raw: Any) -> list[Filter]:
    """Raises ValueError for a malformed filter list."""
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError("filters must be a list")
    return [Filter.from_dict(f) for f in raw]


def _bad_request(message: str) -> web.HTTPBadRequest:
    return web.HTTPBadRequest(
        text=json.dumps({"error": message, "error_code": "BAD_REQUEST"}),
        content_type="application/json",
    )


def _subscription_id(request: web.Request) -> int:
    try:
        return int(request.match_info["subscription_id"])
    except ValueError:
        raise _bad_request("subscription id must be an integer")


def create_http_app(
    service: SubscriptionService,
    worker: Any,
    reports: ReportLog,
) -> web.Application:
    """Create the aiohttp application.

    Args:
        service: Validated subscription writes
        worker: VisibilityWorker, for dry-run evaluation and health
        reports: Reporting view backing /v1/reports

    Returns:
        aiohttp Application instance
    """
    app = web.Application()

    app.router.add_post("/v1/subscriptions", lambda r: handle_create_subscription(r, service))
    app.router.add_put(
        "/v1/subscriptions/{subscription_id}", lambda r: handle_update_subscription(r, service)
    )
    app.router.add_delete(
        "/v1/subscriptions/{subscription_id}", lambda r: handle_delete_subscription(r, service)
    )
    app.router.add_get("/v1/subscriptions", lambda r: handle_list_subscriptions(r, service))
    app.router.add_get("/v1/reports", lambda r: handle_reports(r, reports))
    app.router.add_post("/v1/evaluate", lambda r: handle_evaluate(r, worker))
    app.router.add_get("/v1/health", lambda r: handle_health(r, worker))

    @web.middleware
    async def error_middleware(request: web.Request, handler: Callable) -> web.Response:
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except WalrusError as e:
            logger.error(f"HTTP handler error: {e.message}", extra={"error_code": e.code})
            return web.json_response(e.to_dict(), status=500)
        except Exception as e:
            logger.error(f"HTTP handler error: {e}", exc_info=True)
            return web.json_response({"error": str(e), "error_code": "INTERNAL"}, status=500)

    app.middlewares.append(error_middleware)
    return app


async def handle_create_subscription(
    request: web.Request, service: SubscriptionService
) -> web.Response:
    """Handle POST /v1/subscriptions."""
    body = await _json_body(request)

    missing = [k for k in ("user_id", "schema", "table") if not body.get(k)]
    if missing:
        return _error(400, f"Missing required fields: {missing}")

    try:
        filters = _parse_filters(body.get("filters"))
    except ValueError as e:
        return _error(400, str(e))

    try:
        subscription = await service.create(
            user_id=str(body["user_id"]),
            schema=body["schema"],
            table=body["table"],
            filters=filters,
        )
    except FilterError as e:
        return web.json_response(e.to_dict(), status=400)
    except EntityResolutionError as e:
        return web.json_response(e.to_dict(), status=404)

    return web.json_response(subscription.to_dict(), status=201)


async def handle_update_subscription(
    request: web.Request, service: SubscriptionService
) -> web.Response:
    """Handle PUT /v1/subscriptions/{id}."""
    subscription_id = _subscription_id(request)
    body = await _json_body(request)

    try:
        filters = _parse_filters(body.get("filters"))
    except ValueError as e:
        return _error(400, str(e))

    try:
        subscription = await service.update_filters(subscription_id, filters)
    except SubscriptionNotFoundError as e:
        return _error(404, str(e), "NOT_FOUND")
    except FilterError as e:
        return web.json_response(e.to_dict(), status=400)
    except EntityResolutionError as e:
        return web.json_response(e.to_dict(), status=404)

    return web.json_response(subscription.to_dict())


async def handle_delete_subscription(
    request: web.Request, service: SubscriptionService
) -> web.Response:
    """Handle DELETE /v1/subscriptions/{id}."""
    subscription_id = _subscription_id(request)
    try:
        await service.delete(subscription_id)
    except SubscriptionNotFoundError as e:
        return _error(404, str(e), "NOT_FOUND")
    return web.json_response({"deleted": subscription_id})


async def handle_list_subscriptions(
    request: web.Request, service: SubscriptionService
) -> web.Response:
    """Handle GET /v1/subscriptions."""
    schema = request.query.get("schema")
    table = request.query.get("table")
    if bool(schema) != bool(table):
        return _error(400, "schema and table must be given together")

    if schema and table:
        subscriptions = await service.list_for_entity(schema, table)
    else:
        subscriptions = await service.store.list_all()
    return web.json_response({"subscriptions": [s.to_dict() for s in subscriptions]})


async def handle_reports(request: web.Request, reports: ReportLog) -> web.Response:
    """Handle GET /v1/reports."""
    try:
        limit = min(int(request.query.get("limit", "100")), MAX_REPORT_LIMIT)
    except ValueError:
        return _error(400, "limit must be an integer")
    if limit <= 0:
        return _error(400, "limit must be positive")

    recent = reports.recent(
        limit=limit,
        schema=request.query.get("schema"),
        table=request.query.get("table"),
    )
    return web.json_response({"reports": [r.to_dict() for r in recent], "total": reports.total})


async def handle_evaluate(request: web.Request, worker: Any) -> web.Response:
    """Handle POST /v1/evaluate - evaluate a change event without publishing."""
    body = await _json_body(request)
    try:
        event = ChangeEvent.from_dict(body)
    except ValueError as e:
        return _error(400, str(e))

    try:
        result = await worker.evaluate_event(event)
    except EntityResolutionError as e:
        return web.json_response(e.to_dict(), status=404)

    return web.json_response(EvaluationReport.from_result(result).to_dict())


async def handle_health(request: web.Request, worker: Any) -> web.Response:
    """Handle GET /v1/health."""
    stats = worker.stats
    healthy = stats.get("halted") is None
    return web.json_response({"healthy": healthy, "worker": stats}, status=200 if healthy else 503)


async def start_http_server(app: web.Application, host: str, port: int) -> web.AppRunner:
    """Start serving ``app``; the caller cleans up the returned runner."""
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info(f"HTTP server running on http://{host}:{port}")
    return runner
