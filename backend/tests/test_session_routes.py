from __future__ import annotations

from typing import Iterator

import pytest
from fastapi.testclient import TestClient

from learnsync.connectivity import ConnectivityProbe
from learnsync.credentials import CredentialGateway
from learnsync.ledger import EnrollmentLedger
from learnsync.main import create_app
from learnsync.profile_store import ProfileStore
from learnsync.session_manager import SessionManager

REGISTRATION = {
    "email": "Quinn@Example.com",
    "password": "pw-123456",
    "first_name": "Quinn",
    "last_name": "Park",
}


def _client(stores, identity, certificates, hasher, mode: str) -> TestClient:
    manager = SessionManager(
        probe=ConnectivityProbe(configured_mode=mode),
        gateway=CredentialGateway(stores, identity, hasher=hasher),
        ledger=EnrollmentLedger(stores, certificates),
        profiles=ProfileStore(stores),
        stores=stores,
        identity=identity,
    )
    return TestClient(create_app(manager))


@pytest.fixture()
def client(stores, identity, certificates, hasher) -> Iterator[TestClient]:
    with _client(stores, identity, certificates, hasher, "local") as test_client:
        yield test_client


@pytest.fixture()
def remote_client(remote_db, stores, identity, certificates, hasher) -> Iterator[TestClient]:
    with _client(stores, identity, certificates, hasher, "remote") as test_client:
        yield test_client


def _login(client: TestClient) -> None:
    assert client.post("/api/session/register", json=REGISTRATION).status_code == 201
    response = client.post("/api/session/login", json={"email": "quinn@example.com", "password": "pw-123456"})
    assert response.status_code == 200


def test_initial_state_is_unauthenticated(client) -> None:
    response = client.get("/api/session")

    assert response.status_code == 200
    assert response.json() == {"status": "unauthenticated", "source": None, "mode": "local_fallback", "user": None}


def test_register_login_and_course_flow(client) -> None:
    registered = client.post("/api/session/register", json=REGISTRATION)
    assert registered.status_code == 201
    assert registered.json()["email"] == "quinn@example.com"
    assert registered.json()["enrolled_courses"] == []

    login = client.post("/api/session/login", json={"email": "quinn@example.com", "password": "pw-123456"})
    assert login.status_code == 200
    assert login.json()["status"] == "authenticated"
    assert login.json()["source"] == "local"

    enrolled = client.put("/api/session/enrollments", json={"course_ids": ["b", "a"]})
    assert enrolled.json()["enrolled_courses"] == ["a", "b"]

    completed = client.post("/api/session/courses/a/complete")
    assert completed.status_code == 200
    assert completed.json()["enrolled_courses"] == ["b"]
    assert completed.json()["completed_courses"] == ["a"]

    refreshed = client.post("/api/session/enrollments/refresh")
    assert refreshed.json()["completed_courses"] == ["a"]

    reconciled = client.post("/api/session/certificates/reconcile")
    assert reconciled.json() == {"issued": 0}


def test_profile_patch_merges_fields(client) -> None:
    _login(client)

    response = client.patch("/api/session/profile", json={"bio": "Data engineer", "role": "admin"})

    assert response.status_code == 200
    body = response.json()
    assert body["bio"] == "Data engineer"
    assert body["role"] == "learner"
    assert body["first_name"] == "Quinn"


def test_invalid_profile_value_is_unprocessable(client) -> None:
    _login(client)

    response = client.patch("/api/session/profile", json={"bio": ["not", "text"]})

    assert response.status_code == 422


def test_wrong_password_is_unauthorized(client) -> None:
    client.post("/api/session/register", json=REGISTRATION)

    response = client.post("/api/session/login", json={"email": "quinn@example.com", "password": "wrong"})

    assert response.status_code == 401
    assert response.json()["detail"]["reason"] == "invalid_credentials"
    assert response.json()["detail"]["consistency_failure"] is False


def test_duplicate_registration_conflicts(client) -> None:
    client.post("/api/session/register", json=REGISTRATION)

    response = client.post("/api/session/register", json=REGISTRATION)

    assert response.status_code == 409
    assert response.json()["detail"]["reason"] == "duplicate_user"


def test_mutations_without_a_session_are_unauthorized(client) -> None:
    response = client.put("/api/session/enrollments", json={"course_ids": ["a"]})

    assert response.status_code == 401
    assert response.json()["detail"]["reason"] == "no_session"


def test_logout_returns_unauthenticated_state(client) -> None:
    _login(client)

    response = client.post("/api/session/logout")

    assert response.json()["status"] == "unauthenticated"
    assert client.get("/api/session").json()["user"] is None


def test_password_reset(client) -> None:
    client.post("/api/session/register", json=REGISTRATION)

    assert client.post("/api/session/password-reset", json={"email": "quinn@example.com"}).status_code == 202
    assert client.post("/api/session/password-reset", json={"email": "bad-shape"}).status_code == 422
    assert client.post("/api/session/password-reset", json={"email": "ghost@example.com"}).status_code == 401


def test_missing_profile_row_is_a_distinct_server_error(remote_client, identity) -> None:
    identity.add_account("orphan@example.com", "pw-123456")

    response = remote_client.post("/api/session/login", json={"email": "orphan@example.com", "password": "pw-123456"})

    assert response.status_code == 500
    assert response.json()["detail"] == {
        "reason": "profile_missing",
        "message": "Your account has no profile. Contact support.",
        "consistency_failure": True,
    }


def test_unreachable_identity_provider_is_service_unavailable(remote_client, identity) -> None:
    identity.unreachable = True

    response = remote_client.post("/api/session/login", json={"email": "a@example.com", "password": "pw-123456"})

    assert response.status_code == 503
    assert response.json()["detail"]["reason"] == "unreachable"


def test_ledger_invariant_violation_surfaces_as_consistency_failure(client) -> None:
    _login(client)
    manager: SessionManager = client.app.state.session_manager
    manager.user.completed_courses.add("a")
    manager.user.enrolled_courses.add("a")

    response = client.put("/api/session/enrollments", json={"course_ids": ["z"]})

    assert response.status_code == 500
    assert response.json()["detail"]["consistency_failure"] is True


def test_state_payload_serializes_user(client) -> None:
    _login(client)

    user = client.get("/api/session").json()["user"]

    assert user["name"] == "Quinn Park"
    assert set(user) >= {"id", "role", "email", "enrolled_courses", "completed_courses", "created_at"}
    assert user["email"] == "quinn@example.com"
