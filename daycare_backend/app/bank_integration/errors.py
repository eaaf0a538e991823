"""
Sync Pipeline Errors

Closed set of error types raised by the vault, the SimpleFIN and Firefly
clients and the sync orchestrator. Callers branch on the type, never on
the message text.
"""

from typing import Optional


class SyncError(Exception):
    """Base class for every error raised by the sync pipeline."""


class ConfigurationError(SyncError):
    """Missing or malformed process configuration (encryption key, Firefly token)."""


class InvalidToken(SyncError):
    """SimpleFIN setup token could not be decoded or claimed."""


class AccessRevoked(SyncError):
    """SimpleFIN rejected the access URL credentials (HTTP 401)."""


class RateLimited(SyncError):
    """SimpleFIN daily request quota exhausted (HTTP 429). Retry tomorrow."""


class UpstreamUnavailable(SyncError):
    """Network failure or timeout talking to SimpleFIN or Firefly III."""


class UpstreamApiError(SyncError):
    """Upstream answered with an unexpected non-2xx status."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamProtocolError(SyncError):
    """Upstream response body did not match the expected schema."""


class ValidationFailed(SyncError):
    """Firefly III rejected a payload for a reason other than duplication."""


class AuthenticationFailed(SyncError):
    """Firefly III rejected the service token (HTTP 401)."""


class DecryptionFailed(SyncError):
    """Stored credential could not be decrypted (malformed, tampered or wrong key)."""


class ConnectionSyncError(SyncError):
    """
    A single connection's sync was aborted before its transaction loop.

    The underlying typed error is available as ``__cause__``.
    """

    def __init__(self, connection_id: int, stage: str, message: str):
        super().__init__(message)
        self.connection_id = connection_id
        self.stage = stage
