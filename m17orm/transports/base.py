"""
Base protocol and types for the transport abstraction.

This module defines the Transport protocol that every backend must implement,
along with the shared result type for alternate-language discovery.

Invariants:
    - Every operation has the same input/output semantics on every backend
    - Failures are raised from the coroutine, never signalled by a None result
    - get() raises NotFoundError; search_by_field() returns [] when nothing matches

How to change safely:
    - Protocol changes require updating all implementations
    - Keep OrmClient and the registry forwarding every protocol operation
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from typing import (
    TYPE_CHECKING,
    Any,
    Optional,
    Protocol,
    runtime_checkable,
)
import logging

from ..schema import Entity, EntityType

if TYPE_CHECKING:
    from ..config import OrmConfig

logger = logging.getLogger(__name__)

# Hard cap on rows returned by one search_by_field call
MAX_LIMIT = 1000

ORDER_DIRECTIONS = ("asc", "desc")


@dataclass(frozen=True)
class OtherLanguage:
    """One alternate language variant of an entity.

    Attributes:
        language: Locale tag of the variant
        name: Value of the requested name field, if one was requested
    """

    language: str
    name: Any = None


@runtime_checkable
class Transport(Protocol):
    """Protocol for persistence backends.

    Durability contract:
        - save() returns only after the base row (and language row, when
          applicable) are stored; partial saves are never left behind by the
          relational backend
        - remove() deletes at most one base row per call

    Example:
        >>> transport = SqlTransport("/var/lib/app/content.db")
        >>> await transport.connect()
        >>> article = await transport.save(Article.new(title="X", authorId=7))
        >>> article.id
        1
    """

    @abstractmethod
    async def connect(self) -> None:
        """Connect to the store.

        Must be called before any other operations.

        Raises:
            BackendError: If connection fails
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release all connections."""
        ...

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Whether currently connected to the store."""
        ...

    @abstractmethod
    async def get(
        self,
        entity_type: EntityType,
        entity_id: Any,
        language: Optional[str] = None,
    ) -> Entity:
        """Load one entity by id and optional language.

        Raises:
            NotFoundError: If no row matches
            BackendError: On store failure
        """
        ...

    @abstractmethod
    async def remove(self, entity: Entity) -> None:
        """Delete the entity's base row and, transitively, its language rows."""
        ...

    @abstractmethod
    async def remove_language(self, entity: Entity) -> None:
        """Delete the entity's (id, language) row only."""
        ...

    @abstractmethod
    async def save(self, entity: Entity) -> Entity:
        """Create or update the entity.

        Assigns the generated id onto the entity when it had none.

        Returns:
            The same entity instance
        """
        ...

    @abstractmethod
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
        """Find entities where field equals value.

        Ordering applies only when order_direction is "asc" or "desc".
        At most MAX_LIMIT rows are returned.
        """
        ...

    @abstractmethod
    async def get_other_languages(
        self,
        entity: Entity,
        name_field: Optional[str] = None,
    ) -> list[OtherLanguage]:
        """List the entity's language variants other than entity.language."""
        ...


def normalize_order(order_by: Optional[str], order_direction: Optional[str]) -> Optional[tuple[str, str]]:
    """Return (order_by, direction) when ordering applies, else None.

    order_by is discarded unless order_direction is exactly "asc" or "desc".
    """
    if order_by and order_direction in ORDER_DIRECTIONS:
        return order_by, order_direction
    return None


def normalize_limits(limit_from: Optional[int], limit_to: Optional[int]) -> tuple[int, int]:
    """Return (offset, count) with count clamped to MAX_LIMIT."""
    offset = limit_from if limit_from and limit_from > 0 else 0
    if not limit_to or limit_to > MAX_LIMIT:
        limit_to = MAX_LIMIT
    return offset, max(limit_to, 0)


def create_transport(config: "OrmConfig") -> Transport:
    """Factory function to create a transport from configuration.

    Args:
        config: ORM configuration

    Returns:
        Appropriate Transport implementation (not yet connected)

    Raises:
        ValueError: If backend is not supported
    """
    from ..config import TransportBackend
    from .remote import RemoteTransport
    from .sql import SqlTransport

    if config.backend == TransportBackend.SQL:
        return SqlTransport.from_config(config.sql)
    elif config.backend == TransportBackend.REMOTE:
        return RemoteTransport.from_config(config.remote)
    else:
        raise ValueError(f"Unsupported transport backend: {config.backend}")
