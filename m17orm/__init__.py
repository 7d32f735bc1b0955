"""
m17orm - Multilingual entity persistence.

Entities keep their base attributes in one relation and their translatable
attributes in a sibling per-locale relation. This package provides:
- Entity type definitions (EntityType) and instances (Entity)
- Field projection (base_data, language_data)
- Pluggable transports (SqlTransport, RemoteTransport)
- OrmClient bound to one transport, and a process-wide registry

Example:
    >>> from m17orm import EntityType, OrmClient, SqlTransport
    >>>
    >>> Article = EntityType(
    ...     resource_name="articles",
    ...     fields=("title", "authorId"),
    ...     language_fields=("body",),
    ... )
    >>>
    >>> async with OrmClient(SqlTransport("content.db")) as orm:
    ...     await orm.transport.create_tables(Article)
    ...     article = await orm.save(
    ...         Article.new(title="X", authorId=7, language="en", body="hello")
    ...     )
    ...     others = await orm.get_other_languages(article)

Invariants:
    - Entity ids are assigned by the backend, once
    - A language variant is saved atomically with its base row
    - Lookups raise NotFoundError; searches return []

Version: 1.0.0
"""

__version__ = "1.0.0"

from .client import OrmClient
from .errors import (
    BackendError,
    InvalidIdentifierError,
    NoTransportError,
    NotFoundError,
    OrmError,
    SchemaError,
    TransactionError,
)
from .registry import (
    get,
    get_client,
    get_other_languages,
    remove,
    remove_language,
    reset_transport,
    save,
    search_by_field,
    set_transport,
)
from .schema import Entity, EntityType, base_data, language_data
from .transports import (
    MAX_LIMIT,
    OtherLanguage,
    RemoteTransport,
    SqlTransport,
    Transport,
    create_transport,
)

__all__ = [
    # Version
    "__version__",
    # Schema types
    "EntityType",
    "Entity",
    "base_data",
    "language_data",
    # Transports
    "Transport",
    "SqlTransport",
    "RemoteTransport",
    "OtherLanguage",
    "MAX_LIMIT",
    "create_transport",
    # Client and registry
    "OrmClient",
    "set_transport",
    "get_client",
    "reset_transport",
    "get",
    "save",
    "remove",
    "remove_language",
    "search_by_field",
    "get_other_languages",
    # Errors
    "OrmError",
    "NotFoundError",
    "BackendError",
    "TransactionError",
    "InvalidIdentifierError",
    "SchemaError",
    "NoTransportError",
]
