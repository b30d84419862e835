"""
Error taxonomy raised by the gateway.

Every port implementation translates its SDK's failures into one of these
classes, so callers only ever catch ``GatewayError`` subclasses.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional


class GatewayError(Exception):
    """Base class for failures surfaced by the gateway.

    Attributes:
        message: human-readable message, usually the remote one verbatim
        code: optional machine-readable code from the remote service
        details: optional mapping with extra context
    """

    default_message = "Backend request failed"

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
    ):
        self.message = message or self.default_message
        super().__init__(self.message)
        self.code = code
        self.details = details

    def to_dict(self) -> dict:
        payload: dict[str, Any] = {"message": self.message}
        if self.code:
            payload["code"] = self.code
        if self.details:
            payload["details"] = dict(self.details)
        return payload

    def __str__(self) -> str:
        return self.message


class AuthError(GatewayError):
    """Authentication failed or the caller lacks rights for the operation."""

    default_message = "Not authenticated"


class NotFoundError(GatewayError):
    """A requested row does not exist (or is not visible to the caller)."""

    default_message = "Not found"


class ValidationError(GatewayError):
    """Input rejected locally or by a database constraint."""

    default_message = "Invalid input"


class PersistenceError(GatewayError):
    """A database read or write failed for any other reason."""

    default_message = "Database request failed"


class StorageError(GatewayError):
    """An object storage request failed."""

    default_message = "Storage request failed"
