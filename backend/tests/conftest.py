"""Shared fixtures: a throwaway SQLite remote store, fake collaborators, a snapshot file."""

from __future__ import annotations

import uuid
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

import pytest

from learnsync.config import get_settings
from learnsync.db import models as db_models  # noqa: F401
from learnsync.db.base import Base
from learnsync.db.session import dispose_engine, get_engine
from learnsync.errors import CertificateIssueError, IdentityProviderError
from learnsync.identity import TRANSPORT_ERROR_CODE, IdentitySession, IdentityUser
from learnsync.local_snapshot import LocalSnapshotStore
from learnsync.passwords import PasswordHasher
from learnsync.stores import UserStores
from learnsync.telemetry import TelemetryEvent, captured_events


class FakeIdentityProvider:
    def __init__(self) -> None:
        self.accounts: Dict[str, Dict[str, Any]] = {}
        self.session: Optional[IdentitySession] = None
        self.unreachable = False
        self.require_confirmation = False
        self.reset_requests: List[Tuple[str, Optional[str]]] = []
        self.sign_out_calls = 0
        self.local_clears = 0

    def _check_reachable(self) -> None:
        if self.unreachable:
            raise IdentityProviderError("connection refused", code=TRANSPORT_ERROR_CODE)

    def add_account(self, email: str, password: str, *, user_id: Optional[str] = None, confirmed: bool = True) -> str:
        user_id = user_id or str(uuid.uuid4())
        self.accounts[email] = {"id": user_id, "password": password, "confirmed": confirmed}
        return user_id

    def sign_in(self, email: str, password: str) -> IdentitySession:
        self._check_reachable()
        account = self.accounts.get(email)
        if account is None or account["password"] != password:
            raise IdentityProviderError("Invalid login credentials", status_code=400, code="invalid_credentials")
        if not account["confirmed"]:
            raise IdentityProviderError("Email not confirmed", status_code=400, code="email_not_confirmed")
        self.session = IdentitySession(access_token=f"token-{account['id']}", user_id=account["id"], email=email)
        return self.session

    def sign_up(self, email: str, password: str, metadata: Dict[str, Any]) -> IdentityUser:
        self._check_reachable()
        if email in self.accounts:
            raise IdentityProviderError("User already registered", status_code=422, code="user_already_exists")
        user_id = self.add_account(email, password, confirmed=not self.require_confirmation)
        return IdentityUser(id=user_id, email=email, confirmed=not self.require_confirmation)

    def sign_out(self) -> None:
        self.sign_out_calls += 1
        self._check_reachable()
        self.session = None

    def clear_local_session(self) -> None:
        self.local_clears += 1
        self.session = None

    def current_session(self) -> Optional[IdentitySession]:
        self._check_reachable()
        return self.session

    def reset_password(self, email: str, redirect_to: Optional[str] = None) -> None:
        self._check_reachable()
        self.reset_requests.append((email, redirect_to))


class FakeCertificateIssuer:
    def __init__(self) -> None:
        self.calls: List[Tuple[str, str]] = []
        self.fail = False

    def issue(self, user_id: str, course_id: str) -> None:
        self.calls.append((user_id, course_id))
        if self.fail:
            raise CertificateIssueError("certificate service down")


@pytest.fixture()
def remote_db(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[str]:
    url = f"sqlite:///{tmp_path / 'remote.sqlite'}"
    monkeypatch.setenv("LEARNSYNC_DATABASE_URL", url)
    get_settings.cache_clear()
    dispose_engine()
    Base.metadata.create_all(get_engine())
    yield url
    dispose_engine()
    get_settings.cache_clear()


@pytest.fixture()
def unreachable_db(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Point the remote store at a database file that cannot be opened."""
    monkeypatch.setenv("LEARNSYNC_DATABASE_URL", "sqlite:////nonexistent-dir/learnsync/remote.sqlite")
    get_settings.cache_clear()
    dispose_engine()
    yield
    dispose_engine()
    get_settings.cache_clear()


@pytest.fixture()
def snapshot(tmp_path: Path) -> LocalSnapshotStore:
    return LocalSnapshotStore(tmp_path / "snapshot.json")


@pytest.fixture()
def stores(snapshot: LocalSnapshotStore) -> UserStores:
    return UserStores.from_snapshot(snapshot)


@pytest.fixture()
def identity() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture()
def certificates() -> FakeCertificateIssuer:
    return FakeCertificateIssuer()


@pytest.fixture()
def hasher() -> PasswordHasher:
    return PasswordHasher(rounds=4)


@pytest.fixture()
def events() -> Iterator[List[TelemetryEvent]]:
    with captured_events() as captured:
        yield captured
