"""
API layer for walrus.

Provides the HTTP API for subscription management, the reporting view,
dry-run evaluation and health checks.
"""

from .http_server import create_http_app, start_http_server

__all__ = ["create_http_app", "start_http_server"]
