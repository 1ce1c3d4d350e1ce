"""
Walrus server - Main entry point.

This module starts the walrus server with all components:
- Visibility worker (change feed -> evaluate -> annotated topic)
- HTTP API (subscriptions, reporting view, dry-run evaluation, health)

Usage:
    walrus-server
    python -m realtime.walrus.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - The worker only starts after the stream and the database are reachable
    - A halted worker (identity restoration failure) shuts the server down
      with a non-zero exit status
    - Graceful shutdown lets the worker finish the record in hand

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

import json_log_formatter
from aiohttp import web

from .api.http_server import create_http_app, start_http_server
from .config import ServerConfig
from .storage.postgres import PostgresBackend
from .storage.subscription_store import SubscriptionStore
from .visibility.engine import VisibilityEngine
from .visibility.reporting import ReportLog
from .visibility.subscriptions import SubscriptionService
from .visibility.validator import FilterValidator
from .wal.base import WalStream, create_wal_stream
from .worker import VisibilityWorker

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure the root logger from configuration."""
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("aiokafka").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)


class Server:
    """Walrus server orchestrator.

    Attributes:
        config: Server configuration
        wal: Change-feed stream
        backend: Source database backend
        store: Subscription store
        worker: Visibility worker
        halted: Set when the worker stopped on a fatal error

    Example:
        >>> server = Server()
        >>> await server.start()  # Runs until request_shutdown()
        >>> await server.stop()
    """

    def __init__(self, config: ServerConfig | None = None) -> None:
        self.config = config or ServerConfig.from_env()
        self._running = False
        self._shutdown_event = asyncio.Event()

        self.wal: WalStream | None = None
        self.backend: PostgresBackend | None = None
        self.store: SubscriptionStore | None = None
        self.reports = ReportLog(self.config.engine.report_capacity)
        self.worker: VisibilityWorker | None = None
        self.http_runner: web.AppRunner | None = None
        self.halted: BaseException | None = None

        self._tasks: list[asyncio.Task] = []

    async def start(self) -> None:
        """Start all components and run until shutdown is requested."""
        if self._running:
            logger.warning("Server already running")
            return

        logger.info("Starting walrus server")
        self.config.log_config()

        try:
            Path(self.config.storage.data_dir).mkdir(parents=True, exist_ok=True)

            self.store = SubscriptionStore(
                self.config.storage.subscriptions_path,
                busy_timeout_ms=self.config.storage.busy_timeout_ms,
            )
            self.store.initialize()

            self.backend = PostgresBackend.from_config(self.config.postgres)

            self.wal = create_wal_stream(self.config)
            await self.wal.connect()
            logger.info("Change stream connected")

            role = self.config.engine.authenticated_role
            engine = VisibilityEngine(self.store, authenticated_role=role)
            self.worker = VisibilityWorker(
                wal=self.wal,
                backend=self.backend,
                engine=engine,
                reports=self.reports,
                change_topic=self.config.kafka.change_topic,
                output_topic=self.config.kafka.output_topic,
                group_id=self.config.kafka.consumer_group,
                retry_delay_ms=self.config.worker.retry_delay_ms,
                max_retries=self.config.worker.max_retries,
            )

            if self.config.http.enabled:
                service = SubscriptionService(self.backend, self.store, FilterValidator(role))
                app = create_http_app(service, self.worker, self.reports)
                self.http_runner = await start_http_server(
                    app, self.config.http.host, self.config.http.port
                )

            if self.config.worker.enabled:
                task = asyncio.create_task(self.worker.start())
                task.add_done_callback(self._on_worker_done)
                self._tasks.append(task)

            self._running = True
            logger.info("Walrus server started successfully")

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Server startup failed: {e}", exc_info=True)
            self._running = True
            await self.stop()
            raise

    def _on_worker_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.critical("Visibility worker stopped, shutting down", extra={"error": str(error)})
            self.halted = error
        self.request_shutdown()

    async def stop(self) -> None:
        """Stop the server gracefully."""
        if not self._running:
            return

        logger.info("Stopping walrus server")

        if self.worker:
            await self.worker.stop()

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        if self.http_runner:
            await self.http_runner.cleanup()

        if self.wal:
            await self.wal.close()

        if self.backend:
            await self.backend.close()

        self._running = False
        logger.info("Walrus server stopped")

    def request_shutdown(self) -> None:
        self._shutdown_event.set()


def main() -> None:
    """Main entry point."""
    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    server = Server(config)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        server.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    try:
        loop.run_until_complete(server.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(server.stop())
        loop.close()

    if server.halted is not None:
        sys.exit(2)


if __name__ == "__main__":
    main()
