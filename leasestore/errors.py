"""
Error taxonomy for the storage API.

Every failure a request can hit maps to exactly one of these classes, and each
class maps to exactly one HTTP status. Handlers translate them in
`leasestore.http.error_response_for`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class BadRequestError(ValueError):
    """Raised when request validation fails."""


class MethodNotAllowedError(ValueError):
    """Raised when an unsupported HTTP method is provided."""


class UnauthenticatedError(ValueError):
    """Raised when an ownership signature does not verify."""


class ForbiddenError(ValueError):
    """Raised when a verified identity is not the owner of the record."""


class NotFoundError(ValueError):
    """Raised when a lease record or blob is missing."""


class GoneError(ValueError):
    """Raised when a lease record exists but its expiry has passed."""


class ConflictError(ValueError):
    """Raised when a lease key already exists."""


@dataclass(frozen=True)
class UpstreamError(Exception):
    """Raised when the blob store or payment facilitator fails."""

    message: str
    retryable: bool = True
    details: Any = None

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True)
class PaymentRequiredError(Exception):
    """Raised when an operation needs a fresh settled payment."""

    message: str
    requirements: dict[str, Any]
    resource: dict[str, Any] = field(default_factory=dict)
    details: Any = None

    def __str__(self) -> str:
        return self.message
