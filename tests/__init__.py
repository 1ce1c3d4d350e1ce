"""
Walrus test suite.

This package contains:
- unit/: Unit tests (in-memory storage, no external dependencies)
- integration/: Integration tests (worker loop, HTTP API, PostgreSQL when configured)
"""
