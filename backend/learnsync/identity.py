"""Remote identity provider client and session token persistence.

The provider speaks a GoTrue-style REST dialect:

* ``POST /token?grant_type=password`` issues a session for email + password.
* ``POST /token?grant_type=refresh_token`` renews an expired session.
* ``POST /signup`` creates an identity.
* ``POST /logout`` revokes the bearer token.
* ``POST /recover`` sends a password reset mail.

Every non-success response is raised as :class:`IdentityProviderError` carrying
the provider's status code and error code; transport failures use the
``transport_error`` code so callers can tell "unreachable" apart from a
rejected credential.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import httpx
from pydantic import BaseModel, ValidationError

from .errors import IdentityProviderError

logger = logging.getLogger(__name__)

TRANSPORT_ERROR_CODE = "transport_error"


class IdentitySession(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    user_id: str
    email: str
    expires_at: Optional[datetime] = None

    def is_expired(self, *, leeway: timedelta = timedelta(seconds=30)) -> bool:
        if self.expires_at is None:
            return False
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return datetime.now(timezone.utc) + leeway >= expires_at


class IdentityUser(BaseModel):
    id: str
    email: str
    confirmed: bool = False


class IdentityProvider(Protocol):
    def sign_in(self, email: str, password: str) -> IdentitySession:
        ...

    def sign_up(self, email: str, password: str, metadata: Dict[str, Any]) -> IdentityUser:
        ...

    def sign_out(self) -> None:
        ...

    def clear_local_session(self) -> None:
        ...

    def current_session(self) -> Optional[IdentitySession]:
        ...

    def reset_password(self, email: str, redirect_to: Optional[str] = None) -> None:
        ...


class SessionTokenStore:
    """Persists the provider session so restoration can find it after a restart."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.RLock()

    def load(self) -> Optional[IdentitySession]:
        with self._lock:
            if not self._path.exists():
                return None
            try:
                with self._path.open("r", encoding="utf-8") as handle:
                    return IdentitySession.model_validate(json.load(handle))
            except (OSError, json.JSONDecodeError, ValidationError):
                logger.warning("Discarding unreadable session token at %s", self._path)
                return None

    def save(self, session: IdentitySession) -> None:
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("w", encoding="utf-8") as handle:
                json.dump(session.model_dump(mode="json"), handle)

    def clear(self) -> None:
        with self._lock:
            self._path.unlink(missing_ok=True)


class HttpIdentityProvider:
    """httpx client for the hosted identity provider."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        token_store: SessionTokenStore,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["apikey"] = api_key
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        self._tokens = token_store

    def close(self) -> None:
        self._client.close()

    def sign_in(self, email: str, password: str) -> IdentitySession:
        payload = self._request(
            "POST",
            "/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        session = self._session_from_payload(payload)
        self._tokens.save(session)
        return session

    def sign_up(self, email: str, password: str, metadata: Dict[str, Any]) -> IdentityUser:
        payload = self._request(
            "POST",
            "/signup",
            json={"email": email, "password": password, "data": metadata},
        )
        user_payload = payload.get("user") if isinstance(payload.get("user"), dict) else payload
        return self._user_from_payload(user_payload)

    def sign_out(self) -> None:
        session = self._tokens.load()
        try:
            if session is not None:
                self._request("POST", "/logout", headers={"Authorization": f"Bearer {session.access_token}"})
        finally:
            self._tokens.clear()

    def clear_local_session(self) -> None:
        """Forget the persisted session without contacting the provider."""
        self._tokens.clear()

    def current_session(self) -> Optional[IdentitySession]:
        session = self._tokens.load()
        if session is None or not session.is_expired():
            return session
        if not session.refresh_token:
            logger.info("Stored session for %s expired without a refresh token", session.email)
            self._tokens.clear()
            return None
        payload = self._request(
            "POST",
            "/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": session.refresh_token},
        )
        refreshed = self._session_from_payload(payload)
        self._tokens.save(refreshed)
        return refreshed

    def reset_password(self, email: str, redirect_to: Optional[str] = None) -> None:
        params = {"redirect_to": redirect_to} if redirect_to else None
        self._request("POST", "/recover", params=params, json={"email": email})

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TransportError as exc:
            raise IdentityProviderError(
                f"Identity provider unreachable: {exc}",
                code=TRANSPORT_ERROR_CODE,
            ) from exc

        if response.is_success:
            if not response.content:
                return {}
            try:
                body = response.json()
            except ValueError as exc:
                raise IdentityProviderError(
                    "Identity provider returned a malformed response.",
                    status_code=response.status_code,
                ) from exc
            return body if isinstance(body, dict) else {}

        code, message = _extract_error(response)
        raise IdentityProviderError(message, status_code=response.status_code, code=code)

    @staticmethod
    def _user_from_payload(payload: Dict[str, Any]) -> IdentityUser:
        user_id = payload.get("id")
        email = payload.get("email")
        if not isinstance(user_id, str) or not isinstance(email, str):
            raise IdentityProviderError("Identity provider response is missing the user id or email.")
        confirmed = bool(payload.get("email_confirmed_at") or payload.get("confirmed_at"))
        return IdentityUser(id=user_id, email=email, confirmed=confirmed)

    def _session_from_payload(self, payload: Dict[str, Any]) -> IdentitySession:
        access_token = payload.get("access_token")
        user_payload = payload.get("user")
        if not isinstance(access_token, str) or not isinstance(user_payload, dict):
            raise IdentityProviderError("Identity provider returned a session without a token or user.")
        user = self._user_from_payload(user_payload)
        expires_at: Optional[datetime] = None
        if isinstance(payload.get("expires_at"), (int, float)):
            expires_at = datetime.fromtimestamp(payload["expires_at"], tz=timezone.utc)
        elif isinstance(payload.get("expires_in"), (int, float)):
            expires_at = datetime.now(timezone.utc) + timedelta(seconds=payload["expires_in"])
        return IdentitySession(
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            user_id=user.id,
            email=user.email,
            expires_at=expires_at,
        )


class UnconfiguredIdentityProvider:
    """Used when LEARNSYNC_IDENTITY_URL is unset; every remote call reports unreachable.

    A token file left behind by an earlier configured run is still cleared on
    logout so it cannot be restored once the provider is configured again.
    """

    def __init__(self, token_store: Optional[SessionTokenStore] = None) -> None:
        self._tokens = token_store

    def _unavailable(self) -> IdentityProviderError:
        return IdentityProviderError("LEARNSYNC_IDENTITY_URL is not configured.", code=TRANSPORT_ERROR_CODE)

    def sign_in(self, email: str, password: str) -> IdentitySession:
        raise self._unavailable()

    def sign_up(self, email: str, password: str, metadata: Dict[str, Any]) -> IdentityUser:
        raise self._unavailable()

    def sign_out(self) -> None:
        self.clear_local_session()

    def clear_local_session(self) -> None:
        if self._tokens is not None:
            self._tokens.clear()

    def current_session(self) -> Optional[IdentitySession]:
        return None

    def reset_password(self, email: str, redirect_to: Optional[str] = None) -> None:
        raise self._unavailable()


def _extract_error(response: httpx.Response) -> tuple[Optional[str], str]:
    try:
        body = response.json()
    except ValueError:
        return None, response.text or f"Identity provider error ({response.status_code})"
    if not isinstance(body, dict):
        return None, str(body)
    code = body.get("error_code") or body.get("code") or body.get("error")
    message = body.get("msg") or body.get("message") or body.get("error_description") or str(body)
    return (str(code) if code is not None else None), str(message)


__all__ = [
    "HttpIdentityProvider",
    "IdentityProvider",
    "IdentitySession",
    "IdentityUser",
    "SessionTokenStore",
    "TRANSPORT_ERROR_CODE",
    "UnconfiguredIdentityProvider",
]
