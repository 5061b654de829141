"""Session and enrollment-state synchronization core."""

from .models import (
    AuthErr,
    AuthErrorReason,
    AuthOk,
    BackendMode,
    LedgerErr,
    LedgerErrorReason,
    LedgerOk,
    RegistrationData,
    SessionState,
    SessionStatus,
    User,
)
from .session_manager import SessionManager, build_session_manager

__all__ = [
    "AuthErr",
    "AuthErrorReason",
    "AuthOk",
    "BackendMode",
    "LedgerErr",
    "LedgerErrorReason",
    "LedgerOk",
    "RegistrationData",
    "SessionManager",
    "SessionState",
    "SessionStatus",
    "User",
    "build_session_manager",
]
