"""
Process-wide transport registry for m17orm.

Holds the single active OrmClient and exposes the persistence operations as
module-level coroutines that forward to it. Installing a transport replaces
the active client for every caller in the process.

Code that needs more than one backend at a time should hold OrmClient
instances directly instead.

Example:
    >>> from m17orm import registry
    >>> registry.set_transport(SqlTransport("content.db"))
    >>> await registry.get_client().connect()
    >>> article = await registry.get(Article, 42, "en")
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Optional

from .client import OrmClient
from .errors import NoTransportError
from .schema import Entity, EntityType
from .transports.base import OtherLanguage, Transport

logger = logging.getLogger(__name__)

# Global active client
_active_client: OrmClient | None = None
_registry_lock = threading.Lock()


def set_transport(transport: Transport) -> OrmClient:
    """Install a transport as the process-wide backend.

    Args:
        transport: Backend to use from now on

    Returns:
        The new active client
    """
    global _active_client
    with _registry_lock:
        previous = _active_client
        _active_client = OrmClient(transport)

    logger.info(
        "Transport installed",
        extra={
            "transport": type(transport).__name__,
            "replaced": type(previous.transport).__name__ if previous else None,
        },
    )
    return _active_client


def get_client() -> OrmClient:
    """Get the active client.

    Raises:
        NoTransportError: If no transport has been installed
    """
    client = _active_client
    if client is None:
        raise NoTransportError()
    return client


def reset_transport() -> None:
    """Forget the active transport (for testing only)."""
    global _active_client
    with _registry_lock:
        _active_client = None


async def get(
    entity_type: EntityType,
    entity_id: Any,
    language: Optional[str] = None,
) -> Entity:
    """Get an entity through the active transport."""
    return await get_client().get(entity_type, entity_id, language)


async def save(entity: Entity) -> Entity:
    """Save an entity through the active transport."""
    return await get_client().save(entity)


async def remove(entity: Entity) -> None:
    """Remove an entity through the active transport."""
    await get_client().remove(entity)


async def remove_language(entity: Entity) -> None:
    """Remove one language variant through the active transport."""
    await get_client().remove_language(entity)


async def search_by_field(
    entity_type: EntityType,
    field: str,
    value: Any,
    language: Optional[str] = None,
    order_by: Optional[str] = None,
    order_direction: Optional[str] = None,
    limit_from: Optional[int] = None,
    limit_to: Optional[int] = None,
) -> list[Entity]:
    """Search through the active transport."""
    return await get_client().search_by_field(
        entity_type,
        field,
        value,
        language=language,
        order_by=order_by,
        order_direction=order_direction,
        limit_from=limit_from,
        limit_to=limit_to,
    )


async def get_other_languages(
    entity: Entity,
    name_field: Optional[str] = None,
) -> list[OtherLanguage]:
    """List other language variants through the active transport."""
    return await get_client().get_other_languages(entity, name_field)
