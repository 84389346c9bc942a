"""Exception types raised by the reconciliation engine."""

from __future__ import annotations

from typing import Optional


class DriveMirrorError(Exception):
    """Base class for every error raised by drive_mirror."""


class TransportError(DriveMirrorError):
    """Network failure or unexpected HTTP status from the remote store."""

    RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status

    @property
    def retryable(self) -> bool:
        # status None means the request never got an answer (connection/timeout)
        return self.status is None or self.status in self.RETRYABLE_STATUSES


class AuthExpiredError(DriveMirrorError):
    """The token provider could not mint an access token; re-authorization is required."""


class SessionExpiredError(DriveMirrorError):
    """A resumable upload session handle is no longer valid."""


class NotFoundError(DriveMirrorError):
    """The remote object does not exist (or is no longer visible)."""


class SecurityScopeViolation(DriveMirrorError):
    """A deletion target could not be proven to live under the scope root."""


class ManifestCorruptError(DriveMirrorError):
    """The remote manifest document could not be parsed."""


class SyncInProgressError(DriveMirrorError):
    """A run was requested while another session is still live."""


class RootResolutionError(DriveMirrorError):
    """The remote root folder could not be found or created."""


class LocalRootError(DriveMirrorError):
    """The local directory is missing or not a directory; nothing can be mirrored."""
