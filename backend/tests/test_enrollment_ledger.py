"""Ledger transitions against both backends."""

from __future__ import annotations

import pytest
from sqlalchemy import func, select

from learnsync.db.models import CourseCompletionModel, UserCourseModel
from learnsync.db.session import session_scope
from learnsync.errors import LedgerInvariantError
from learnsync.ledger import EnrollmentLedger
from learnsync.local_snapshot import LocalUserRecord
from learnsync.models import BackendMode, LedgerErr, LedgerErrorReason, LedgerOk, Role, User, UserProfile


@pytest.fixture()
def ledger(stores, certificates) -> EnrollmentLedger:
    return EnrollmentLedger(stores, certificates)


@pytest.fixture(params=[BackendMode.REMOTE, BackendMode.LOCAL_FALLBACK], ids=["remote", "local"])
def mode(request) -> BackendMode:
    if request.param is BackendMode.REMOTE:
        request.getfixturevalue("remote_db")
    return request.param


@pytest.fixture()
def user(mode, stores) -> User:
    profile = UserProfile(email="grace@example.com", first_name="Grace", last_name="Hopper")
    if mode is BackendMode.REMOTE:
        return stores.remote.create_user("user-grace", profile, role=Role.LEARNER)
    return stores.local.create_user(LocalUserRecord(id="user-grace", profile=profile, credential_hash="x"))


def _completion_rows(user_id: str, course_id: str) -> int:
    with session_scope(commit=False) as session:
        stmt = (
            select(func.count())
            .select_from(CourseCompletionModel)
            .where(CourseCompletionModel.user_id == user_id, CourseCompletionModel.course_id == course_id)
        )
        return session.execute(stmt).scalar_one()


def test_enroll_then_complete(ledger, mode, user, stores) -> None:
    assert ledger.set_enrollment(mode, user, {"course-1"}) == LedgerOk()
    assert user.enrolled_courses == {"course-1"}

    assert ledger.complete_course(mode, user, "course-1") == LedgerOk()

    assert user.enrolled_courses == set()
    assert user.completed_courses == {"course-1"}
    stored = stores.for_mode(mode).load_user(user.id)
    assert stored.enrolled_courses == set()
    assert stored.completed_courses == {"course-1"}


def test_set_enrollment_is_additive_and_never_rewrites(ledger, mode, user, events) -> None:
    ledger.set_enrollment(mode, user, {"a", "b"})
    ledger.set_enrollment(mode, user, {"a", "b", "c"})
    ledger.set_enrollment(mode, user, {"a", "b", "c"})

    assert user.enrolled_courses == {"a", "b", "c"}
    added = [event.payload["added"] for event in events if event.name == "enrollment_updated"]
    assert added == [["a", "b"], ["c"]]


def test_remote_enrollment_rows_are_not_recreated(ledger, remote_db, stores) -> None:
    user = stores.remote.create_user("user-rows", UserProfile(email="rows@example.com"), role=Role.LEARNER)
    ledger.set_enrollment(BackendMode.REMOTE, user, ["a", "b"])
    with session_scope(commit=False) as session:
        before = dict(session.execute(select(UserCourseModel.course_id, UserCourseModel.id)).all())

    ledger.set_enrollment(BackendMode.REMOTE, user, ["a", "b", "c"])

    with session_scope(commit=False) as session:
        after = dict(session.execute(select(UserCourseModel.course_id, UserCourseModel.id)).all())
    assert set(after) == {"a", "b", "c"}
    assert after["a"] == before["a"] and after["b"] == before["b"]


def test_complete_course_twice_issues_one_certificate(ledger, mode, user, certificates, stores) -> None:
    ledger.set_enrollment(mode, user, {"course-1"})

    ledger.complete_course(mode, user, "course-1")
    ledger.complete_course(mode, user, "course-1")

    assert user.enrolled_courses == set()
    assert user.completed_courses == {"course-1"}
    assert certificates.calls == [(user.id, "course-1")]
    assert stores.for_mode(mode).pending_certificates(user.id) == []
    if mode is BackendMode.REMOTE:
        assert _completion_rows(user.id, "course-1") == 1


def test_completing_a_course_that_was_never_enrolled(ledger, mode, user) -> None:
    assert ledger.complete_course(mode, user, "walk-in") == LedgerOk()

    assert user.completed_courses == {"walk-in"}
    assert user.enrolled_courses == set()


def test_enrolling_in_a_completed_course_is_ignored(ledger, mode, user, stores) -> None:
    ledger.complete_course(mode, user, "done")

    assert ledger.set_enrollment(mode, user, {"done", "next"}) == LedgerOk()

    assert user.completed_courses == {"done"}
    assert user.enrolled_courses == {"next"}
    assert stores.for_mode(mode).load_user(user.id).enrolled_courses == {"next"}


def test_sets_stay_disjoint_across_mixed_sequences(ledger, mode, user) -> None:
    operations = [
        ("enroll", {"a", "b"}),
        ("complete", "a"),
        ("enroll", {"a", "c"}),
        ("complete", "c"),
        ("complete", "z"),
        ("enroll", {"z", "b", "d"}),
        ("complete", "b"),
        ("complete", "b"),
    ]
    for kind, argument in operations:
        if kind == "enroll":
            ledger.set_enrollment(mode, user, argument)
        else:
            ledger.complete_course(mode, user, argument)
        assert user.enrolled_courses.isdisjoint(user.completed_courses)

    assert user.enrolled_courses == {"d"}
    assert user.completed_courses == {"a", "b", "c", "z"}


def test_write_failure_leaves_memory_untouched(ledger, mode, user, stores, monkeypatch, events) -> None:
    store = stores.for_mode(mode)

    def refuse(*args, **kwargs):
        raise RuntimeError("write rejected")

    monkeypatch.setattr(store, "add_enrollments", refuse)
    result = ledger.set_enrollment(mode, user, {"course-1"})

    assert isinstance(result, LedgerErr)
    assert result.reason is LedgerErrorReason.WRITE_FAILED
    assert user.enrolled_courses == set()
    assert any(event.name == "ledger_write_failed" for event in events)


def test_retry_after_failed_flip_finishes_flip_and_issues_pending_certificate(ledger, mode, user, stores, certificates, monkeypatch) -> None:
    store = stores.for_mode(mode)
    ledger.set_enrollment(mode, user, {"course-1"})
    original_mark = store.mark_completed

    def crash(*args, **kwargs):
        raise RuntimeError("connection dropped")

    monkeypatch.setattr(store, "mark_completed", crash)
    first = ledger.complete_course(mode, user, "course-1")
    assert isinstance(first, LedgerErr)
    assert user.enrolled_courses == {"course-1"}
    assert user.completed_courses == set()

    monkeypatch.setattr(store, "mark_completed", original_mark)
    assert ledger.complete_course(mode, user, "course-1") == LedgerOk()

    assert user.enrolled_courses == set()
    assert user.completed_courses == {"course-1"}
    assert certificates.calls == [(user.id, "course-1")]
    assert store.pending_certificates(user.id) == []
    assert ledger.reconcile_certificates(mode, user.id) == 0
    if mode is BackendMode.REMOTE:
        assert _completion_rows(user.id, "course-1") == 1


def test_certificate_failure_keeps_completion_and_reconciles_later(ledger, mode, user, certificates, stores, events) -> None:
    certificates.fail = True

    assert ledger.complete_course(mode, user, "course-9") == LedgerOk()

    assert user.completed_courses == {"course-9"}
    assert any(event.name == "certificate_issue_failed" for event in events)
    assert ledger.reconcile_certificates(mode) == 0

    certificates.fail = False
    assert ledger.reconcile_certificates(mode) == 1
    assert stores.for_mode(mode).pending_certificates() == []
    assert ledger.reconcile_certificates(mode) == 0
    assert len(certificates.calls) == 3


def test_mirror_failure_does_not_fail_the_operation(ledger, mode, user, stores, monkeypatch, events) -> None:
    def broken_mirror(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(stores.snapshot, "set_current_user", broken_mirror)

    assert ledger.set_enrollment(mode, user, {"course-1"}) == LedgerOk()
    assert user.enrolled_courses == {"course-1"}
    assert any(event.name == "snapshot_mirror_failed" for event in events)


def test_refresh_reloads_sets_from_the_active_backend(ledger, mode, user, stores) -> None:
    store = stores.for_mode(mode)
    store.add_enrollments(user.id, ["from-elsewhere"])

    assert ledger.refresh(mode, user) == LedgerOk()

    assert user.enrolled_courses == {"from-elsewhere"}


def test_refresh_of_a_missing_user_is_a_read_failure(ledger, mode, stores) -> None:
    ghost = User(id="ghost", profile=UserProfile(email="ghost@example.com"))

    result = ledger.refresh(mode, ghost)

    assert isinstance(result, LedgerErr)
    assert result.reason is LedgerErrorReason.READ_FAILED


def test_overlapping_sets_raise_instead_of_being_repaired(ledger) -> None:
    user = User(
        id="broken",
        profile=UserProfile(email="broken@example.com"),
        enrolled_courses={"x"},
        completed_courses={"x"},
    )

    with pytest.raises(LedgerInvariantError) as excinfo:
        ledger.assert_disjoint(user)

    assert excinfo.value.overlap == frozenset({"x"})
    assert user.enrolled_courses == {"x"}


def test_empty_course_id_is_rejected(ledger, mode, user) -> None:
    with pytest.raises(ValueError):
        ledger.complete_course(mode, user, "   ")


def test_completing_again_retries_a_failed_certificate_once(ledger, mode, user, certificates, stores) -> None:
    certificates.fail = True
    ledger.complete_course(mode, user, "course-4")
    certificates.fail = False

    assert ledger.complete_course(mode, user, "course-4") == LedgerOk()
    assert ledger.complete_course(mode, user, "course-4") == LedgerOk()

    assert certificates.calls == [(user.id, "course-4"), (user.id, "course-4")]
    assert stores.for_mode(mode).pending_certificates(user.id) == []
