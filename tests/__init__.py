"""
m17orm Test Suite.

This package contains:
- unit/: Unit tests (no external dependencies; HTTP via httpx.MockTransport)
- integration/: Integration tests (SQLite files in a temporary directory)
"""
