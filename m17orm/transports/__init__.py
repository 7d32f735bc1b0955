"""
Transport backends for m17orm.

This package provides a pluggable persistence backend interface supporting:
- SQLite with separate read/write connections (SqlTransport)
- A remote REST service (RemoteTransport)

Invariants:
    - Every backend implements the Transport protocol
    - Lookups raise NotFoundError; searches return empty lists

How to change safely:
    - New backends must implement the Transport protocol
    - Register them in create_transport() and TransportBackend
"""

from .base import (
    MAX_LIMIT,
    OtherLanguage,
    Transport,
    create_transport,
)
from .remote import RemoteTransport
from .sql import SaveState, SaveTransaction, SqlTransport

__all__ = [
    # Protocol and types
    "Transport",
    "OtherLanguage",
    "MAX_LIMIT",
    # Factory
    "create_transport",
    # Implementations
    "SqlTransport",
    "SaveState",
    "SaveTransaction",
    "RemoteTransport",
]
