from __future__ import annotations

import pytest

from learnsync.local_snapshot import LocalUserRecord
from learnsync.models import BackendMode, LedgerErr, LedgerErrorReason, LedgerOk, Role, UserProfile
from learnsync.profile_store import ProfileStore


@pytest.fixture()
def profiles(stores) -> ProfileStore:
    return ProfileStore(stores)


def _seed_local(stores):
    record = LocalUserRecord(
        id="user-1",
        role=Role.INSTRUCTOR,
        profile=UserProfile(email="kay@example.com", first_name="Kay", last_name="Adams", bio="Teaches Python"),
        enrolled_courses={"c-1"},
        credential_hash="hash",
    )
    return stores.local.create_user(record)


def test_partial_update_keeps_absent_fields(profiles, stores) -> None:
    user = _seed_local(stores)

    result = profiles.update_profile(BackendMode.LOCAL_FALLBACK, user, {"bio": "Now teaches Go", "phone": " 555 "})

    assert result == LedgerOk()
    assert user.profile.bio == "Now teaches Go"
    assert user.profile.phone == "555"
    assert user.profile.first_name == "Kay"
    stored = stores.local.load_user("user-1")
    assert stored.profile == user.profile
    assert stores.snapshot.current_user().profile.bio == "Now teaches Go"


def test_protected_fields_are_ignored_not_errored(profiles, stores) -> None:
    user = _seed_local(stores)

    result = profiles.update_profile(
        BackendMode.LOCAL_FALLBACK,
        user,
        {"id": "hijack", "role": "admin", "enrolledCourses": ["x"], "completed_courses": ["y"], "lastName": "Ng"},
    )

    assert result == LedgerOk()
    assert user.id == "user-1"
    assert user.role is Role.INSTRUCTOR
    assert user.enrolled_courses == {"c-1"}
    assert user.completed_courses == set()
    assert user.profile.last_name == "Ng"


def test_unknown_fields_are_dropped_and_email_is_normalized(profiles) -> None:
    normalized = profiles.normalize_fields({"Email": " New@Example.COM ", "favouriteColour": "blue", "avatarUrl": ""})

    assert normalized == {"email": "new@example.com", "avatar_ref": None}


def test_non_string_values_are_rejected(profiles) -> None:
    with pytest.raises(ValueError):
        profiles.normalize_fields({"bio": 42})


def test_remote_update_writes_through(remote_db, profiles, stores) -> None:
    user = stores.remote.create_user("user-r", UserProfile(email="r@example.com"), role=Role.LEARNER)

    assert profiles.update_profile(BackendMode.REMOTE, user, {"location": "Lisbon", "avatar": "avatars/r.png"}) == LedgerOk()

    stored = stores.remote.load_user("user-r")
    assert stored.profile.location == "Lisbon"
    assert stored.profile.avatar_ref == "avatars/r.png"
    assert stores.snapshot.get_user("user-r").profile.location == "Lisbon"


def test_failed_write_keeps_previous_profile(profiles, stores, monkeypatch, events) -> None:
    user = _seed_local(stores)

    def refuse(*args, **kwargs):
        raise OSError("read-only filesystem")

    monkeypatch.setattr(stores.local, "update_profile", refuse)
    result = profiles.update_profile(BackendMode.LOCAL_FALLBACK, user, {"bio": "changed"})

    assert isinstance(result, LedgerErr)
    assert result.reason is LedgerErrorReason.WRITE_FAILED
    assert user.profile.bio == "Teaches Python"
    assert any(event.name == "profile_update_failed" for event in events)


def test_local_email_change_cannot_take_another_accounts_email(profiles, stores) -> None:
    user = _seed_local(stores)
    stores.local.create_user(
        LocalUserRecord(id="user-2", profile=UserProfile(email="jo@example.com"), credential_hash="hash-2")
    )

    result = profiles.update_profile(BackendMode.LOCAL_FALLBACK, user, {"email": " Jo@Example.com "})

    assert isinstance(result, LedgerErr)
    assert result.reason is LedgerErrorReason.WRITE_FAILED
    assert user.email == "kay@example.com"
    assert stores.local.find_by_email("jo@example.com").id == "user-2"
    assert stores.snapshot.get_user("user-1").email == "kay@example.com"


def test_local_email_change_to_own_address_is_allowed(profiles, stores) -> None:
    user = _seed_local(stores)

    result = profiles.update_profile(BackendMode.LOCAL_FALLBACK, user, {"email": "KAY@example.com"})

    assert result == LedgerOk()
    assert user.email == "kay@example.com"
