"""Domain models shared by the session, credential, ledger and profile components."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional, Set, Union

from pydantic import BaseModel, Field, field_validator


def _now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_email(value: str) -> str:
    normalized = value.strip().lower()
    if not normalized:
        raise ValueError("Email cannot be empty.")
    return normalized


class BackendMode(str, Enum):
    REMOTE = "remote"
    LOCAL_FALLBACK = "local_fallback"


class Role(str, Enum):
    LEARNER = "learner"
    INSTRUCTOR = "instructor"
    ADMIN = "admin"


PROFILE_FIELDS = (
    "first_name",
    "last_name",
    "email",
    "phone",
    "bio",
    "location",
    "occupation",
    "education",
    "avatar_ref",
)


class UserProfile(BaseModel):
    first_name: str = ""
    last_name: str = ""
    email: str
    phone: str = ""
    bio: str = ""
    location: str = ""
    occupation: str = ""
    education: str = ""
    avatar_ref: Optional[str] = None

    @property
    def name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


class User(BaseModel):
    id: str = Field(..., min_length=1, frozen=True)
    role: Role = Field(default=Role.LEARNER, frozen=True)
    profile: UserProfile
    enrolled_courses: Set[str] = Field(default_factory=set)
    completed_courses: Set[str] = Field(default_factory=set)
    created_at: datetime = Field(default_factory=_now, frozen=True)

    @property
    def email(self) -> str:
        return self.profile.email


class RegistrationData(BaseModel):
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=1)
    first_name: str = ""
    last_name: str = ""
    phone: str = ""
    role: Role = Role.LEARNER
    bio: str = ""
    location: str = ""
    occupation: str = ""
    education: str = ""

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return normalize_email(value)

    def profile(self) -> UserProfile:
        return UserProfile(
            first_name=self.first_name.strip(),
            last_name=self.last_name.strip(),
            email=self.email,
            phone=self.phone.strip(),
            bio=self.bio,
            location=self.location,
            occupation=self.occupation,
            education=self.education,
        )


class CompletionRecord(BaseModel):
    """Durable fact that a user finished a course; drives certificate issuance."""

    user_id: str
    course_id: str
    completed_at: datetime = Field(default_factory=_now)
    certificate_issued_at: Optional[datetime] = None

    @property
    def certificate_pending(self) -> bool:
        return self.certificate_issued_at is None


class SessionStatus(str, Enum):
    LOADING = "loading"
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"


class SessionState(BaseModel):
    status: SessionStatus
    user: Optional[User] = None
    source: Optional[Literal["remote", "local"]] = None

    @classmethod
    def loading(cls) -> "SessionState":
        return cls(status=SessionStatus.LOADING)

    @classmethod
    def authenticated(cls, user: User, source: Literal["remote", "local"]) -> "SessionState":
        return cls(status=SessionStatus.AUTHENTICATED, user=user, source=source)

    @classmethod
    def unauthenticated(cls) -> "SessionState":
        return cls(status=SessionStatus.UNAUTHENTICATED)

    @property
    def is_authenticated(self) -> bool:
        return self.status is SessionStatus.AUTHENTICATED


class AuthErrorReason(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    NOT_CONFIRMED = "not_confirmed"
    UNREACHABLE = "unreachable"
    PROFILE_MISSING = "profile_missing"
    DUPLICATE_USER = "duplicate_user"
    UNKNOWN = "unknown"


class LedgerErrorReason(str, Enum):
    NO_SESSION = "no_session"
    WRITE_FAILED = "write_failed"
    READ_FAILED = "read_failed"


@dataclass(frozen=True)
class AuthOk:
    user: User
    kind: Literal["ok"] = "ok"

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class AuthErr:
    reason: AuthErrorReason
    message: str
    kind: Literal["error"] = "error"

    @property
    def ok(self) -> bool:
        return False

    @property
    def is_consistency_failure(self) -> bool:
        return self.reason is AuthErrorReason.PROFILE_MISSING


AuthResult = Union[AuthOk, AuthErr]


@dataclass(frozen=True)
class LedgerOk:
    kind: Literal["ok"] = "ok"

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class LedgerErr:
    reason: LedgerErrorReason
    message: str
    kind: Literal["error"] = "error"

    @property
    def ok(self) -> bool:
        return False


LedgerResult = Union[LedgerOk, LedgerErr]


__all__ = [
    "AuthErr",
    "AuthErrorReason",
    "AuthOk",
    "AuthResult",
    "BackendMode",
    "CompletionRecord",
    "LedgerErr",
    "LedgerErrorReason",
    "LedgerOk",
    "LedgerResult",
    "PROFILE_FIELDS",
    "RegistrationData",
    "Role",
    "SessionState",
    "SessionStatus",
    "User",
    "UserProfile",
    "normalize_email",
]
