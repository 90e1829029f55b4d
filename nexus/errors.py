"""Error taxonomy shared by the turn pipeline and the HTTP surface."""

from __future__ import annotations

from typing import Any


class NexusError(Exception):
    """Base error carrying a machine-readable code safe to put on the wire."""

    code = "internal_error"
    status = 500

    def __init__(self, message: str, *, code: str | None = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.retryable = retryable

    def to_wire(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class BadRequestError(NexusError):
    code = "bad_request"
    status = 400


class NotFoundError(NexusError):
    code = "not_found"
    status = 404


class UnknownProviderError(NexusError):
    """Raised by the provider registry before any network call is made."""

    code = "unsupported_provider"
    status = 400


class PersistenceError(NexusError):
    code = "persistence_error"


class ProviderError(NexusError):
    """Normalized backend failure.

    ``code`` is ``<provider>_error``; ``retryable`` is informational only, the
    orchestrator never retries on its own.
    """

    status = 502

    def __init__(self, provider: str, message: str, *, retryable: bool = True) -> None:
        super().__init__(message, code=f"{provider}_error", retryable=retryable)
        self.provider = provider

    def to_wire(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "retryable": self.retryable}
