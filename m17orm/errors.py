"""
Error types for m17orm.

This module defines all exception types raised by the ORM and its transports:
- OrmError: Base exception
- NotFoundError: Single-entity lookup matched nothing
- BackendError: Store or remote service fault
- TransactionError: A step of the atomic save failed
- InvalidIdentifierError: Unsafe field or column name
- SchemaError: Invalid entity type definition
- NoTransportError: No transport installed in the registry

Invariants:
    - All errors inherit from OrmError
    - NotFoundError is never used for an empty search result
    - BackendError keeps the original exception in ``cause``
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class OrmError(Exception):
    """Base exception for all m17orm errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "ORM_ERROR"
        self.details = details or {}


class NotFoundError(OrmError):
    """Entity not found.

    Raised when:
    - No base row matches the requested id
    - No language row matches the requested (id, language) pair
    - The remote service answers 404
    """

    def __init__(
        self,
        message: str,
        resource_name: str,
        entity_id: Any,
        language: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="NOT_FOUND",
            details={
                "resource_name": resource_name,
                "entity_id": entity_id,
                "language": language,
            },
        )
        self.resource_name = resource_name
        self.entity_id = entity_id
        self.language = language


class BackendError(OrmError):
    """Fault in the underlying store or remote service.

    Attributes:
        cause: The original exception raised by the driver or HTTP client
    """

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        code: str = "BACKEND_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, code=code, details=details)
        self.cause = cause


class TransactionError(BackendError):
    """A write inside the atomic save protocol failed.

    A rollback has been attempted before this is raised. ``cause`` is the
    error that triggered the rollback, ``state`` the last state reached.

    The driver error itself is not re-raised: callers receive this wrapper
    and find the original in ``cause`` (also chained as ``__cause__``), so
    the failed save step is reported alongside it.
    """

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        state: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            cause=cause,
            code="TRANSACTION_ERROR",
            details={"state": state},
        )
        self.state = state


class InvalidIdentifierError(OrmError, ValueError):
    """A field or column name is not a plain identifier."""

    def __init__(self, identifier: Any, role: str = "field") -> None:
        super().__init__(
            f"Invalid {role} name: {identifier!r}",
            code="INVALID_IDENTIFIER",
            details={"identifier": identifier, "role": role},
        )
        self.identifier = identifier
        self.role = role


class SchemaError(OrmError, ValueError):
    """Entity type definition is invalid."""

    def __init__(self, message: str, resource_name: Optional[str] = None) -> None:
        super().__init__(
            message,
            code="SCHEMA_ERROR",
            details={"resource_name": resource_name},
        )
        self.resource_name = resource_name


class NoTransportError(OrmError):
    """The registry has no active transport."""

    def __init__(self) -> None:
        super().__init__(
            "No transport installed; call set_transport() first",
            code="NO_TRANSPORT",
        )
