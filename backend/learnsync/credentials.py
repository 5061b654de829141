"""Login, registration, logout and password reset against the active backend."""

from __future__ import annotations

import logging
import re
import uuid
from typing import Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from .errors import AuthFailure, IdentityProviderError, SnapshotError
from .identity import TRANSPORT_ERROR_CODE, IdentityProvider
from .local_snapshot import LocalUserRecord
from .models import AuthErrorReason, BackendMode, RegistrationData, User, normalize_email
from .passwords import PasswordHasher
from .stores import UserStores
from .telemetry import emit_event

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

_INVALID_CREDENTIAL_CODES = {"invalid_credentials", "invalid_grant", "invalid_login_credentials"}
_NOT_CONFIRMED_CODES = {"email_not_confirmed", "phone_not_confirmed"}
_DUPLICATE_CODES = {"user_already_exists", "email_exists", "phone_exists"}
_UNAVAILABLE_STATUSES = {502, 503, 504}


def auth_failure_from_provider(exc: IdentityProviderError) -> AuthFailure:
    """Collapse a provider error into the backend-agnostic taxonomy."""
    code = (exc.code or "").lower()
    message = exc.message.lower()
    if code == TRANSPORT_ERROR_CODE or exc.status_code in _UNAVAILABLE_STATUSES:
        return AuthFailure(AuthErrorReason.UNREACHABLE, "The sign-in service is unreachable. Try again later.")
    if code in _NOT_CONFIRMED_CODES or "not confirmed" in message:
        return AuthFailure(AuthErrorReason.NOT_CONFIRMED, "Please confirm your email address before signing in.")
    if code in _INVALID_CREDENTIAL_CODES or "invalid login" in message:
        return AuthFailure(AuthErrorReason.INVALID_CREDENTIALS, "Invalid email or password.")
    if code in _DUPLICATE_CODES or "already registered" in message:
        return AuthFailure(AuthErrorReason.DUPLICATE_USER, "An account with this email already exists.")
    return AuthFailure(AuthErrorReason.UNKNOWN, exc.message or "Authentication failed.")


class CredentialGateway:
    """Credential operations with failures normalized to ``AuthErrorReason``.

    Every method takes the process ``BackendMode`` explicitly. Remote-mode
    credential failures are final: nothing here consults the local snapshot
    after the identity provider has rejected a credential.
    """

    def __init__(
        self,
        stores: UserStores,
        identity: IdentityProvider,
        *,
        hasher: Optional[PasswordHasher] = None,
        password_reset_redirect: Optional[str] = None,
    ) -> None:
        self._stores = stores
        self._identity = identity
        self._hasher = hasher or PasswordHasher()
        self._password_reset_redirect = password_reset_redirect

    def login(self, mode: BackendMode, email: str, password: str) -> User:
        try:
            normalized = normalize_email(email)
        except ValueError as exc:
            raise AuthFailure(AuthErrorReason.INVALID_CREDENTIALS, "Invalid email or password.") from exc
        if mode is BackendMode.REMOTE:
            return self._login_remote(normalized, password)
        return self._login_local(normalized, password)

    def _login_remote(self, email: str, password: str) -> User:
        try:
            session = self._identity.sign_in(email, password)
        except IdentityProviderError as exc:
            failure = auth_failure_from_provider(exc)
            logger.info("Remote login rejected for %s: %s", email, failure.reason.value)
            raise failure from exc

        try:
            user = self._stores.remote.load_user(session.user_id)
        except SQLAlchemyError as exc:
            self._discard_provider_session(session.user_id)
            logger.warning("Profile read failed after remote sign-in for %s: %s", email, exc)
            raise AuthFailure(AuthErrorReason.UNREACHABLE, "Your profile could not be loaded. Try again later.") from exc
        except (ValidationError, ValueError) as exc:
            self._discard_provider_session(session.user_id)
            logger.error("Profile row for identity %s is malformed: %s", session.user_id, exc)
            emit_event("login_profile_malformed", user_id=session.user_id)
            raise AuthFailure(AuthErrorReason.PROFILE_MISSING, "Your account profile is damaged. Contact support.") from exc

        if user is None:
            self._discard_provider_session(session.user_id)
            logger.error("Identity %s signed in but has no profile row", session.user_id)
            emit_event("login_profile_missing", user_id=session.user_id)
            raise AuthFailure(AuthErrorReason.PROFILE_MISSING, "Your account has no profile. Contact support.")

        self._stores.mirror(user, mode=BackendMode.REMOTE, credential_hash=self._hasher.hash(password))
        return user

    def _discard_provider_session(self, user_id: str) -> None:
        """Revoke and forget a provider session whose login did not produce a ``User``."""
        try:
            self._identity.sign_out()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not revoke provider session for %s: %s", user_id, exc)
        self._forget_provider_session()

    def _forget_provider_session(self) -> None:
        try:
            self._identity.clear_local_session()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Could not clear the persisted provider session: %s", exc)

    def _login_local(self, email: str, password: str) -> User:
        try:
            record = self._stores.local.find_by_email(email)
        except SnapshotError as exc:
            logger.error("Local user table unreadable during login: %s", exc)
            raise AuthFailure(AuthErrorReason.UNKNOWN, "Offline sign-in is unavailable.") from exc
        if record is None or not self._hasher.verify(password, record.credential_hash or ""):
            raise AuthFailure(AuthErrorReason.INVALID_CREDENTIALS, "Invalid email or password.")
        user = record.to_user()
        self._stores.mirror(user, mode=BackendMode.LOCAL_FALLBACK)
        return user

    def register(self, mode: BackendMode, data: RegistrationData) -> User:
        """Create an account with empty course sets; does not start a session."""
        if mode is BackendMode.REMOTE:
            return self._register_remote(data)
        return self._register_local(data)

    def _register_remote(self, data: RegistrationData) -> User:
        try:
            exists = self._stores.remote.email_exists(data.email)
        except SQLAlchemyError as exc:
            raise AuthFailure(AuthErrorReason.UNREACHABLE, "Registration is unavailable. Try again later.") from exc
        if exists:
            raise AuthFailure(AuthErrorReason.DUPLICATE_USER, "An account with this email already exists.")

        try:
            identity = self._identity.sign_up(
                data.email,
                data.password,
                {"first_name": data.first_name, "last_name": data.last_name, "role": data.role.value},
            )
        except IdentityProviderError as exc:
            raise auth_failure_from_provider(exc) from exc

        try:
            user = self._stores.remote.create_user(identity.id, data.profile(), role=data.role)
        except Exception as exc:  # noqa: BLE001
            self._report_orphaned_identity(identity.id, data.email, exc)
            raise AuthFailure(
                AuthErrorReason.PROFILE_MISSING,
                "Your sign-in was created but your profile could not be saved. Contact support.",
            ) from exc

        emit_event("user_registered", user_id=user.id, mode=BackendMode.REMOTE, role=user.role)
        self._stores.mirror(
            user,
            mode=BackendMode.REMOTE,
            credential_hash=self._hasher.hash(data.password),
            set_current=False,
        )
        return user

    def _report_orphaned_identity(self, user_id: str, email: str, exc: Exception) -> None:
        logger.error("Profile insert failed after identity %s was created for %s: %s", user_id, email, exc)
        emit_event("registration_profile_insert_failed", user_id=user_id, error=str(exc))
        try:
            self._stores.remote.record_audit(
                user_id,
                "registration_profile_insert_failed",
                {"email": email, "error": str(exc)},
            )
        except Exception as audit_exc:  # noqa: BLE001
            logger.error("Could not record orphaned identity %s in the audit log: %s", user_id, audit_exc)

    def _register_local(self, data: RegistrationData) -> User:
        try:
            if self._stores.local.find_by_email(data.email) is not None:
                raise AuthFailure(AuthErrorReason.DUPLICATE_USER, "An account with this email already exists.")
            record = LocalUserRecord(
                id=str(uuid.uuid4()),
                role=data.role,
                profile=data.profile(),
                credential_hash=self._hasher.hash(data.password),
            )
            user = self._stores.local.create_user(record)
        except SnapshotError as exc:
            logger.error("Local registration failed for %s: %s", data.email, exc)
            raise AuthFailure(AuthErrorReason.UNKNOWN, "Registration could not be saved on this device.") from exc
        emit_event("user_registered", user_id=user.id, mode=BackendMode.LOCAL_FALLBACK, role=user.role)
        return user

    def logout(self, mode: BackendMode) -> None:
        """Revoke remotely when online; the persisted provider session is cleared in every mode."""
        if mode is BackendMode.REMOTE:
            try:
                self._identity.sign_out()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Remote sign-out failed; continuing local teardown: %s", exc)
        self._forget_provider_session()
        try:
            self._stores.snapshot.clear_current_user()
        except SnapshotError as exc:
            logger.warning("Could not clear the current user from the local snapshot: %s", exc)

    def reset_password(self, mode: BackendMode, email: str) -> None:
        if not email or not EMAIL_PATTERN.match(email.strip()):
            raise ValueError("Please enter a valid email address.")
        normalized = normalize_email(email)
        if mode is BackendMode.REMOTE:
            try:
                self._identity.reset_password(normalized, self._password_reset_redirect)
            except IdentityProviderError as exc:
                raise auth_failure_from_provider(exc) from exc
            return
        try:
            record = self._stores.local.find_by_email(normalized)
        except SnapshotError as exc:
            raise AuthFailure(AuthErrorReason.UNKNOWN, "Password reset is unavailable offline.") from exc
        if record is None:
            raise AuthFailure(AuthErrorReason.INVALID_CREDENTIALS, "No account found with that email.")
        logger.info("Offline password reset requested for %s; no mail is sent in local mode", normalized)


__all__ = ["CredentialGateway", "EMAIL_PATTERN", "auth_failure_from_provider"]
