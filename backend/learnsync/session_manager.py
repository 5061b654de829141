"""Startup session restoration and the single authoritative in-memory ``User``."""

from __future__ import annotations

import logging
import threading
from typing import Any, Iterable, Mapping, Optional

from .certificates import CertificateIssuer, HttpCertificateIssuer, UnconfiguredCertificateIssuer
from .config import Settings, get_settings
from .connectivity import ConnectivityProbe
from .credentials import CredentialGateway
from .errors import AuthFailure, SessionNotRestoredError
from .identity import HttpIdentityProvider, IdentityProvider, SessionTokenStore, UnconfiguredIdentityProvider
from .ledger import EnrollmentLedger
from .local_snapshot import LocalSnapshotStore
from .models import (
    AuthErr,
    AuthErrorReason,
    AuthOk,
    AuthResult,
    BackendMode,
    LedgerErr,
    LedgerErrorReason,
    LedgerResult,
    RegistrationData,
    SessionState,
    User,
)
from .profile_store import ProfileStore
from .stores import UserStores
from .telemetry import emit_event

logger = logging.getLogger(__name__)

_NO_SESSION = LedgerErr(LedgerErrorReason.NO_SESSION, "Sign in to continue.")


class SessionManager:
    """Owns the session state machine: ``loading -> authenticated | unauthenticated``.

    ``restore_session`` must run once before anything else. Every public
    operation takes the same lock, so mutating calls for the current user are
    serialized even when issued from several threads.

    Restoration and explicit login treat failures differently on purpose: a
    remote restoration failure degrades to the local snapshot, while a
    rejected credential during login is returned as-is and never replaced by
    a stale local identity.
    """

    def __init__(
        self,
        probe: ConnectivityProbe,
        gateway: CredentialGateway,
        ledger: EnrollmentLedger,
        profiles: ProfileStore,
        stores: UserStores,
        identity: IdentityProvider,
    ) -> None:
        self._probe = probe
        self._gateway = gateway
        self._ledger = ledger
        self._profiles = profiles
        self._stores = stores
        self._identity = identity
        self._lock = threading.Lock()
        self._state = SessionState.loading()
        self._mode: Optional[BackendMode] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def user(self) -> Optional[User]:
        return self._state.user

    @property
    def mode(self) -> Optional[BackendMode]:
        return self._mode

    def restore_session(self) -> SessionState:
        with self._lock:
            if self._mode is not None:
                return self._state
            mode = self._probe.check_connectivity()
            state = self._restore(mode)
            self._mode = mode
            self._state = state
        emit_event(
            "session_restored",
            status=state.status,
            source=state.source,
            mode=mode,
            user_id=state.user.id if state.user else None,
        )
        return state

    def _restore(self, mode: BackendMode) -> SessionState:
        if mode is BackendMode.REMOTE:
            user = self._restore_remote()
            if user is not None:
                self._stores.mirror(user, mode=mode)
                return SessionState.authenticated(user, source="remote")
        user = self._restore_local()
        if user is not None:
            return SessionState.authenticated(user, source="local")
        return SessionState.unauthenticated()

    def _restore_remote(self) -> Optional[User]:
        try:
            session = self._identity.current_session()
            if session is None:
                return None
            user = self._stores.remote.load_user(session.user_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Remote session restoration failed; trying the local snapshot: %s", exc)
            return None
        if user is None:
            logger.warning("Remote session %s has no profile row; trying the local snapshot", session.user_id)
        return user

    def _restore_local(self) -> Optional[User]:
        try:
            return self._stores.snapshot.current_user()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Local snapshot restoration failed: %s", exc)
            return None

    def _require_mode(self) -> BackendMode:
        if self._mode is None:
            raise SessionNotRestoredError("restore_session() must complete before other session operations.")
        return self._mode

    def login(self, email: str, password: str) -> AuthResult:
        with self._lock:
            mode = self._require_mode()
            try:
                user = self._gateway.login(mode, email, password)
            except AuthFailure as exc:
                emit_event("login_failed", reason=exc.reason, mode=mode)
                return AuthErr(exc.reason, exc.message)
            except Exception:  # noqa: BLE001
                logger.exception("Unexpected login failure")
                return AuthErr(AuthErrorReason.UNKNOWN, "Sign-in failed. Please try again.")
            self._state = SessionState.authenticated(
                user,
                source="remote" if mode is BackendMode.REMOTE else "local",
            )
            emit_event("login_succeeded", user_id=user.id, mode=mode)
            return AuthOk(user)

    def register(self, data: RegistrationData) -> AuthResult:
        with self._lock:
            mode = self._require_mode()
            try:
                user = self._gateway.register(mode, data)
            except AuthFailure as exc:
                emit_event("registration_failed", reason=exc.reason, mode=mode)
                return AuthErr(exc.reason, exc.message)
            except Exception:  # noqa: BLE001
                logger.exception("Unexpected registration failure")
                return AuthErr(AuthErrorReason.UNKNOWN, "Registration failed. Please try again.")
            return AuthOk(user)

    def logout(self) -> SessionState:
        with self._lock:
            mode = self._require_mode()
            user_id = self._state.user.id if self._state.user else None
            try:
                self._gateway.logout(mode)
            finally:
                self._state = SessionState.unauthenticated()
            emit_event("logout", user_id=user_id, mode=mode)
            return self._state

    def reset_password(self, email: str) -> Optional[AuthErr]:
        """Request a password reset; returns ``None`` on success."""
        with self._lock:
            mode = self._require_mode()
            try:
                self._gateway.reset_password(mode, email)
            except AuthFailure as exc:
                return AuthErr(exc.reason, exc.message)
            return None

    def set_enrollment(self, course_ids: Iterable[str]) -> LedgerResult:
        with self._lock:
            mode = self._require_mode()
            user = self._state.user
            if user is None:
                return _NO_SESSION
            return self._ledger.set_enrollment(mode, user, course_ids)

    def complete_course(self, course_id: str) -> LedgerResult:
        with self._lock:
            mode = self._require_mode()
            user = self._state.user
            if user is None:
                return _NO_SESSION
            return self._ledger.complete_course(mode, user, course_id)

    def refresh_enrollments(self) -> LedgerResult:
        with self._lock:
            mode = self._require_mode()
            user = self._state.user
            if user is None:
                return _NO_SESSION
            return self._ledger.refresh(mode, user)

    def update_profile(self, fields: Mapping[str, Any]) -> LedgerResult:
        with self._lock:
            mode = self._require_mode()
            user = self._state.user
            if user is None:
                return _NO_SESSION
            return self._profiles.update_profile(mode, user, fields)

    def reconcile_certificates(self, *, all_users: bool = False) -> int:
        """Retry pending certificate issuance for the current user (or everyone)."""
        with self._lock:
            mode = self._require_mode()
            user = self._state.user
            if user is None and not all_users:
                return 0
            return self._ledger.reconcile_certificates(mode, None if all_users else user.id)


def build_session_manager(
    settings: Optional[Settings] = None,
    *,
    identity: Optional[IdentityProvider] = None,
    certificates: Optional[CertificateIssuer] = None,
    probe: Optional[ConnectivityProbe] = None,
) -> SessionManager:
    """Wire the core components from configuration."""
    settings = settings or get_settings()
    snapshot = LocalSnapshotStore(settings.snapshot_path)
    stores = UserStores.from_snapshot(snapshot)

    if identity is None:
        tokens = SessionTokenStore(settings.session_path)
        if settings.identity_url:
            identity = HttpIdentityProvider(
                settings.identity_url,
                settings.identity_api_key,
                tokens,
                timeout=settings.http_timeout,
            )
        else:
            logger.warning("LEARNSYNC_IDENTITY_URL is not set; remote sign-in will report unreachable")
            identity = UnconfiguredIdentityProvider(tokens)

    if certificates is None:
        if settings.certificate_endpoint:
            certificates = HttpCertificateIssuer(
                settings.certificate_endpoint,
                settings.identity_api_key,
                timeout=settings.http_timeout,
            )
        else:
            certificates = UnconfiguredCertificateIssuer()

    return SessionManager(
        probe=probe or ConnectivityProbe(configured_mode=settings.backend_mode),
        gateway=CredentialGateway(
            stores,
            identity,
            password_reset_redirect=settings.password_reset_redirect,
        ),
        ledger=EnrollmentLedger(stores, certificates),
        profiles=ProfileStore(stores),
        stores=stores,
        identity=identity,
    )


__all__ = ["SessionManager", "build_session_manager"]
