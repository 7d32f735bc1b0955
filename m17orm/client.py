"""
ORM client bound to one transport.

OrmClient is the explicit handle callers hold: it owns one transport and
forwards the persistence operations to it. The process-wide registry in
m17orm.registry is a thin layer over a single OrmClient.

Example:
    >>> async with OrmClient(SqlTransport("content.db")) as orm:
    ...     article = await orm.save(Article.new(title="X", authorId=7))
    ...     same = await orm.get(Article, article.id)
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from .schema import Entity, EntityType
from .transports.base import OtherLanguage, Transport

logger = logging.getLogger(__name__)


class OrmClient:
    """Forwards persistence operations to one transport.

    Attributes:
        transport: The backend every operation runs against
    """

    def __init__(self, transport: Transport) -> None:
        self.transport = transport

    async def connect(self) -> None:
        await self.transport.connect()

    async def close(self) -> None:
        await self.transport.close()

    async def __aenter__(self) -> OrmClient:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def get(
        self,
        entity_type: EntityType,
        entity_id: Any,
        language: Optional[str] = None,
    ) -> Entity:
        """Get an entity by id and optional language.

        Raises:
            NotFoundError: If nothing matches
        """
        return await self.transport.get(entity_type, entity_id, language)

    async def save(self, entity: Entity) -> Entity:
        """Save an entity, assigning its id on first insert."""
        return await self.transport.save(entity)

    async def remove(self, entity: Entity) -> None:
        """Remove an entity and all its language variants."""
        await self.transport.remove(entity)

    async def remove_language(self, entity: Entity) -> None:
        """Remove only the entity's current language variant."""
        await self.transport.remove_language(entity)

    async def search_by_field(
        self,
        entity_type: EntityType,
        field: str,
        value: Any,
        language: Optional[str] = None,
        order_by: Optional[str] = None,
        order_direction: Optional[str] = None,
        limit_from: Optional[int] = None,
        limit_to: Optional[int] = None,
    ) -> list[Entity]:
        """Search for entities where field equals value."""
        return await self.transport.search_by_field(
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
        self,
        entity: Entity,
        name_field: Optional[str] = None,
    ) -> list[OtherLanguage]:
        """List the entity's language variants other than its own."""
        return await self.transport.get_other_languages(entity, name_field)
