"""Exception hierarchy shared by the gateway, credential and history layers.

Hierarchy::

    TraktListsError
    ├── ConfigError              malformed duration/interval settings
    ├── CatalogRequestError      catalog request missing a required input
    ├── UpstreamError            non-2xx response or network failure
    │   └── UpstreamAuthExpired  HTTP 401 on an authenticated call
    ├── CredentialNotFound       no stored token pair for a username
    └── PersistenceError         relational store failure

Cache failures never surface as exceptions; the cache degrades to a miss.
"""

from __future__ import annotations

from typing import Any


class TraktListsError(Exception):
    """Base class for all errors raised by the add-on core."""


class ConfigError(TraktListsError, ValueError):
    """Raised when a configuration value cannot be parsed."""


class CatalogRequestError(TraktListsError, ValueError):
    """Raised when a catalog request lacks an input its source needs."""


class UpstreamError(TraktListsError):
    """Raised when an upstream service call fails."""

    def __init__(
        self,
        message: str,
        *,
        service: str,
        url: str | None = None,
        status_code: int | None = None,
        response_data: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.service = service
        self.url = url
        self.status_code = status_code
        self.response_data = response_data

    def __str__(self) -> str:
        if self.status_code:
            return f"{self.service} (HTTP {self.status_code}): {self.message}"
        return f"{self.service}: {self.message}"


class UpstreamAuthExpired(UpstreamError):
    """Raised when an upstream rejects the supplied access token."""


class CredentialNotFound(TraktListsError, KeyError):
    """Raised when no credential record exists for a username."""

    def __init__(self, username: str) -> None:
        super().__init__(f"No credentials stored for user {username}")
        self.username = username

    def __str__(self) -> str:
        return f"No credentials stored for user {self.username}"


class PersistenceError(TraktListsError):
    """Raised when the relational store rejects a read or write."""
