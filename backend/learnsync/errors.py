"""Exception hierarchy for the session and enrollment core."""

from __future__ import annotations

from typing import Optional

from .models import AuthErrorReason


class LearnSyncError(Exception):
    """Base exception for learnsync errors."""


class AuthFailure(LearnSyncError):
    """Credential operation failed with a backend-agnostic reason."""

    def __init__(self, reason: AuthErrorReason, message: str) -> None:
        super().__init__(message)
        self.reason = reason
        self.message = message


class IdentityProviderError(LearnSyncError):
    """Error response from the remote identity provider."""

    def __init__(self, message: str, *, status_code: Optional[int] = None, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code


class ConsistencyError(LearnSyncError):
    """Remote or in-memory state contradicts an invariant of the core."""


class LedgerInvariantError(ConsistencyError):
    """Enrolled and completed course sets overlap."""

    def __init__(self, user_id: str, overlap: frozenset[str]) -> None:
        super().__init__(
            f"Enrolled and completed courses overlap for user '{user_id}': {sorted(overlap)}"
        )
        self.user_id = user_id
        self.overlap = overlap


class SnapshotError(LearnSyncError):
    """The local fallback snapshot could not be read or written."""


class CertificateIssueError(LearnSyncError):
    """The certificate collaborator rejected or failed an issuance."""


class SessionNotRestoredError(LearnSyncError):
    """An operation was attempted before restore_session() resolved."""


__all__ = [
    "AuthFailure",
    "CertificateIssueError",
    "ConsistencyError",
    "IdentityProviderError",
    "LearnSyncError",
    "LedgerInvariantError",
    "SessionNotRestoredError",
    "SnapshotError",
]
