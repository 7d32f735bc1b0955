"""
REST transport for m17orm.

Maps each transport operation to one HTTP request against a remote service
that owns the data. The service is responsible for consistency; this client
is stateless apart from its configuration.

Paths:
    GET    /{resource}/{id}[/{language}]           get
    POST   /{resource}                             save (no id yet)
    PUT    /{resource}/{id}[/{language}]           save (id known)
    DELETE /{resource}/{id}                        remove
    DELETE /{resource}/{id}/{language}             remove_language
    GET    /{resource}?searchField=...             search_by_field
    GET    /{resource}/{id}[/{language}]/others    get_other_languages
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Optional
from urllib.parse import quote

import httpx

from ..errors import BackendError, NotFoundError
from ..schema import Entity, EntityType, base_data, language_data
from .base import OtherLanguage, normalize_limits

if TYPE_CHECKING:
    from ..config import RemoteConfig

logger = logging.getLogger(__name__)


def entity_path(resource_name: str, entity_id: Any = None, language: Optional[str] = None) -> str:
    """Build /{resource}[/{id}[/{language}]] with each segment escaped."""
    path = "/" + quote(resource_name, safe="")
    if entity_id is not None:
        path += "/" + quote(str(entity_id), safe="")
        if language:
            path += "/" + quote(language, safe="")
    return path


class RemoteTransport:
    """HTTP implementation of the Transport protocol.

    The Authorization header is part of the transport's configuration.
    Use with_auth() to obtain a transport with a different header.

    Example:
        >>> async with RemoteTransport("https://api.example.com", auth="Bearer t") as remote:
        ...     article = await remote.get(Article, 42, "en")
    """

    def __init__(
        self,
        base_url: str,
        auth: str | None = None,
        timeout_seconds: float = 30.0,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the transport.

        Args:
            base_url: Root URL of the remote service
            auth: Authorization header value, or None to send none
            timeout_seconds: Per-request timeout
            http_transport: Optional httpx transport (used by tests)
        """
        self.base_url = base_url
        self.auth = auth
        self.timeout_seconds = timeout_seconds
        self._http_transport = http_transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_config(cls, config: "RemoteConfig") -> RemoteTransport:
        return cls(
            base_url=config.base_url,
            auth=config.auth,
            timeout_seconds=config.timeout_seconds,
        )

    @property
    def headers(self) -> dict[str, str]:
        """Headers sent with every request."""
        if self.auth:
            return {"Authorization": self.auth}
        return {}

    def with_auth(self, auth: str | None) -> RemoteTransport:
        """Return a new, unconnected transport with the Authorization header
        replaced, or removed when auth is None or empty."""
        return RemoteTransport(
            base_url=self.base_url,
            auth=auth or None,
            timeout_seconds=self.timeout_seconds,
            http_transport=self._http_transport,
        )

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """Create the HTTP client."""
        if self._client is not None:
            return

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.headers,
            timeout=self.timeout_seconds,
            transport=self._http_transport,
        )
        logger.info("Remote transport connected", extra={"base_url": self.base_url})

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> RemoteTransport:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> httpx.Response:
        """Send one request; transport failures and non-2xx (except 404) raise BackendError.

        404 responses are returned to the caller, which decides what they mean.
        """
        if self._client is None:
            raise BackendError("Remote transport is not connected")

        logger.debug("Sending request", extra={"method": method, "path": path})
        try:
            response = await self._client.request(method, path, params=params, json=json)
        except httpx.HTTPError as e:
            raise BackendError(f"{method} {path} failed: {e}", cause=e) from e

        if response.status_code == 404:
            return response

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise BackendError(
                f"{method} {path} failed with status {response.status_code}",
                cause=e,
                details={"status_code": response.status_code},
            ) from e
        return response

    def _json(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise BackendError(
                f"Invalid JSON from {response.request.method} {response.request.url.path}",
                cause=e,
            ) from e

    async def get(
        self,
        entity_type: EntityType,
        entity_id: Any,
        language: Optional[str] = None,
    ) -> Entity:
        """Get an entity by id and optional language.

        Raises:
            NotFoundError: If the service answers 404
            BackendError: On any other failure
        """
        response = await self._request("GET", entity_path(entity_type.resource_name, entity_id, language))
        if response.status_code == 404:
            raise NotFoundError(
                f"{entity_type.resource_name} {entity_id!r} not found",
                resource_name=entity_type.resource_name,
                entity_id=entity_id,
                language=language,
            )

        data = self._json(response)
        if not isinstance(data, dict):
            raise BackendError(f"Expected an object for {entity_type.resource_name} {entity_id!r}")
        return entity_type.create(data)

    async def remove(self, entity: Entity) -> None:
        """Remove an entity entirely; an entity without id is never stored."""
        if entity.id is None:
            logger.debug(
                "Skipping remove of unsaved entity",
                extra={"resource_name": entity.entity_type.resource_name},
            )
            return

        path = entity_path(entity.entity_type.resource_name, entity.id)
        response = await self._request("DELETE", path)
        if response.status_code == 404:
            raise BackendError(
                f"DELETE {path} failed with status 404",
                details={"status_code": 404},
            )

    async def remove_language(self, entity: Entity) -> None:
        """Remove an entity's language data; a 404 means nothing to delete.

        Sends nothing unless both id and language are set, since the shorter
        path would address the whole entity or collection.
        """
        if entity.id is None or not entity.language:
            logger.debug(
                "Skipping remove_language without id and language",
                extra={
                    "resource_name": entity.entity_type.resource_name,
                    "entity_id": entity.id,
                    "language": entity.language,
                },
            )
            return

        path = entity_path(entity.entity_type.resource_name, entity.id, entity.language)
        await self._request("DELETE", path)

    async def save(self, entity: Entity) -> Entity:
        """Save an entity.

        POSTs new entities and assigns the id returned by the service;
        PUTs entities that already have an id.
        """
        entity_type = entity.entity_type
        payload = base_data(entity)
        if entity.language and entity_type.is_multilingual:
            payload.update(language_data(entity))

        if entity.id is not None:
            path = entity_path(entity_type.resource_name, entity.id, entity.language)
            response = await self._request("PUT", path, json=payload)
            if response.status_code == 404:
                raise BackendError(f"PUT {path} failed with status 404", details={"status_code": 404})
            return entity

        if entity.language:
            payload["language"] = entity.language

        path = entity_path(entity_type.resource_name)
        response = await self._request("POST", path, json=payload)
        if response.status_code == 404:
            raise BackendError(f"POST {path} failed with status 404", details={"status_code": 404})

        data = self._json(response)
        new_id = data.get("id") if isinstance(data, dict) else None
        if new_id is None:
            raise BackendError(f"POST {path} did not return an id")

        # Update the id on the entity when inserted for the first time
        entity.id = new_id
        return entity

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
        """Search for entities where field equals value.

        Ordering is passed through; limits are clamped to MAX_LIMIT first.
        """
        offset, count = normalize_limits(limit_from, limit_to)
        params = {
            "searchField": field,
            "searchValue": value,
            "searchLanguage": language,
            "orderBy": order_by,
            "orderDirection": order_direction,
            "limitFrom": offset,
            "limitTo": count,
        }
        params = {k: v for k, v in params.items() if v is not None}

        path = entity_path(entity_type.resource_name)
        response = await self._request("GET", path, params=params)
        if response.status_code == 404:
            return []

        rows = self._json(response)
        if not isinstance(rows, list):
            raise BackendError(f"Expected a list from GET {path}")
        return entity_type.create_list(rows)

    async def get_other_languages(
        self,
        entity: Entity,
        name_field: Optional[str] = None,
    ) -> list[OtherLanguage]:
        """Get the entity's other language variants.

        The service may answer with locale strings or with objects holding
        ``language`` and the requested name field.
        """
        path = entity_path(entity.entity_type.resource_name, entity.id, entity.language) + "/others"
        params = {"nameField": name_field} if name_field else None

        response = await self._request("GET", path, params=params)
        if response.status_code == 404 or not response.content:
            return []

        items = self._json(response)
        if items is None:
            return []
        if not isinstance(items, list):
            raise BackendError(f"Expected a list from GET {path}")

        result = []
        for item in items:
            if isinstance(item, str):
                result.append(OtherLanguage(language=item))
            elif isinstance(item, dict) and "language" in item:
                name = item.get(name_field) if name_field else None
                result.append(OtherLanguage(language=item["language"], name=name))
            else:
                raise BackendError(f"Unexpected item in response from GET {path}: {item!r}")

        # The current language is never reported as an alternative
        return [other for other in result if other.language != entity.language]
