"""
Exceptions for Konduit.

Every failure the engine can report derives from KonduitError, so callers
can catch the whole family at one seam and still tell the kinds apart:

    LoadError               - a resource could not be fetched
    ComponentNotFoundError  - a component is neither registered nor loadable
    ResolutionTimeoutError  - an instance graph did not converge in time
    InvalidKeyError         - a dataset key with forbidden characters
    DatastoreError          - a backend operation failed
      ServiceError          - the remote service answered with an error
        AuthenticationError - the remote service rejected the credentials
"""

from __future__ import annotations

from typing import Any


class KonduitError(Exception):
    """Base exception for all Konduit errors."""


class LoadError(KonduitError):
    """Raised when a resource cannot be fetched."""

    def __init__(self, key: str, message: str | None = None):
        super().__init__(message or f"Failed to load resource '{key}'")
        self.key = key


class ComponentNotFoundError(KonduitError):
    """Raised when a component reference cannot be turned into a definition."""

    def __init__(self, reference: Any, message: str | None = None):
        super().__init__(message or f"Component '{reference}' is not registered and could not be loaded")
        self.reference = reference


class ResolutionTimeoutError(KonduitError):
    """Raised when an instance graph does not converge within the configured timeout."""

    def __init__(self, reference: Any, timeout: float):
        super().__init__(f"Resolution of '{reference}' did not converge within {timeout}s")
        self.reference = reference
        self.timeout = timeout


class InvalidKeyError(KonduitError, ValueError):
    """Raised for dataset keys that are not valid."""

    def __init__(self, key: Any):
        super().__init__(f"Invalid dataset key: {key!r}")
        self.key = key


class DatastoreError(KonduitError):
    """Raised when a datastore backend operation fails."""


class ServiceError(DatastoreError):
    """Raised when a remote data service answers with an error."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        response_body: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body

    def __str__(self) -> str:
        parts = [str(self.args[0])]
        if self.status_code:
            parts.append(f"(status={self.status_code})")
        return " ".join(parts)


class AuthenticationError(ServiceError):
    """Raised when the remote service answers with the error sentinel."""
