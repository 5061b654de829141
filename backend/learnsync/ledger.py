"""Enrolled/completed course sets and their transition rules.

Per course id, scoped to one user::

    NotEnrolled --enroll--> Enrolled --complete--> Completed (terminal)
    NotEnrolled --complete------------------------> Completed

The in-memory ``User`` is only changed after the active backend accepted the
write, so a failed write leaves memory, backend and snapshot agreeing on the
previous state and the caller receives ``LedgerErr(write_failed)``.

Completion is ordered completion record -> set flip -> certificate: the
record upsert is idempotent on ``(user, course)``, so a retry after a crash
between steps finds the record and finishes the flip. The collaborator is
called whenever the record is still pending and never once it is stamped.
Certificates whose issuance failed stay pending on their record until a retry
or :meth:`EnrollmentLedger.reconcile_certificates` succeeds for them.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from .certificates import CertificateIssuer
from .errors import LedgerInvariantError
from .models import (
    BackendMode,
    CompletionRecord,
    LedgerErr,
    LedgerErrorReason,
    LedgerOk,
    LedgerResult,
    User,
)
from .stores import ActiveStore, UserStores
from .telemetry import emit_event

logger = logging.getLogger(__name__)


def _clean_course_ids(course_ids: Iterable[str]) -> set[str]:
    return {course_id.strip() for course_id in course_ids if isinstance(course_id, str) and course_id.strip()}


class EnrollmentLedger:
    def __init__(self, stores: UserStores, certificates: CertificateIssuer) -> None:
        self._stores = stores
        self._certificates = certificates

    def set_enrollment(self, mode: BackendMode, user: User, course_ids: Iterable[str]) -> LedgerResult:
        """Add enrollments for ids not yet enrolled; never removes or re-writes existing ones."""
        requested = _clean_course_ids(course_ids)
        new_ids = requested - user.enrolled_courses - user.completed_courses
        skipped = requested & user.completed_courses
        if skipped:
            logger.debug("Ignoring enrollment for completed courses %s (user %s)", sorted(skipped), user.id)
        if not new_ids:
            self.assert_disjoint(user)
            return LedgerOk()

        store = self._stores.for_mode(mode)
        try:
            written = store.add_enrollments(user.id, new_ids)
        except Exception as exc:  # noqa: BLE001
            return self._write_failed("set_enrollment", mode, user, exc)

        user.enrolled_courses |= new_ids
        emit_event("enrollment_updated", user_id=user.id, mode=mode, added=written)
        self._stores.mirror(user, mode=mode)
        self.assert_disjoint(user)
        return LedgerOk()

    def complete_course(self, mode: BackendMode, user: User, course_id: str) -> LedgerResult:
        course_id = course_id.strip()
        if not course_id:
            raise ValueError("Course id cannot be empty.")

        store = self._stores.for_mode(mode)
        try:
            record, created = store.record_completion(user.id, course_id)
            store.mark_completed(user.id, course_id)
        except Exception as exc:  # noqa: BLE001
            return self._write_failed("complete_course", mode, user, exc, course_id=course_id)

        user.enrolled_courses.discard(course_id)
        user.completed_courses.add(course_id)
        if created:
            emit_event("course_completed", user_id=user.id, course_id=course_id, mode=mode)
        if record.certificate_pending:
            # First attempt, or a retry after an earlier run stopped before issuing.
            self._issue_certificate(store, record)
        else:
            logger.info("Certificate for %s/%s already issued; not re-issuing", user.id, course_id)

        self._stores.mirror(user, mode=mode)
        self.assert_disjoint(user)
        return LedgerOk()

    def refresh(self, mode: BackendMode, user: User) -> LedgerResult:
        """Reload both course sets from the active backend."""
        store = self._stores.for_mode(mode)
        try:
            stored = store.load_user(user.id)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Enrollment refresh failed for %s: %s", user.id, exc)
            return LedgerErr(LedgerErrorReason.READ_FAILED, "Enrollments could not be loaded.")
        if stored is None:
            return LedgerErr(LedgerErrorReason.READ_FAILED, f"User '{user.id}' no longer exists in the {mode.value} store.")

        user.enrolled_courses = set(stored.enrolled_courses)
        user.completed_courses = set(stored.completed_courses)
        self.assert_disjoint(user)
        self._stores.mirror(user, mode=mode)
        return LedgerOk()

    def reconcile_certificates(self, mode: BackendMode, user_id: Optional[str] = None) -> int:
        """Re-invoke the certificate collaborator for pending completion records.

        Returns the number of certificates confirmed during this sweep.
        """
        store = self._stores.for_mode(mode)
        pending = store.pending_certificates(user_id)
        issued = 0
        for record in pending:
            if self._issue_certificate(store, record):
                issued += 1
        emit_event("certificate_reconciliation_completed", mode=mode, pending=len(pending), issued=issued)
        return issued

    def assert_disjoint(self, user: User) -> None:
        overlap = frozenset(user.enrolled_courses & user.completed_courses)
        if overlap:
            emit_event("ledger_invariant_violated", user_id=user.id, overlap=overlap)
            raise LedgerInvariantError(user.id, overlap)

    def _issue_certificate(self, store: ActiveStore, record: CompletionRecord) -> bool:
        try:
            self._certificates.issue(record.user_id, record.course_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Certificate issuance failed for %s/%s; left pending for reconciliation: %s",
                record.user_id,
                record.course_id,
                exc,
            )
            emit_event("certificate_issue_failed", user_id=record.user_id, course_id=record.course_id, error=str(exc))
            return False
        try:
            store.mark_certificate_issued(record.user_id, record.course_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Certificate issued for %s/%s but the record could not be stamped: %s",
                record.user_id,
                record.course_id,
                exc,
            )
            return False
        emit_event("certificate_issued", user_id=record.user_id, course_id=record.course_id)
        return True

    @staticmethod
    def _write_failed(
        operation: str,
        mode: BackendMode,
        user: User,
        exc: Exception,
        *,
        course_id: Optional[str] = None,
    ) -> LedgerErr:
        logger.warning("Ledger %s failed for user %s in %s mode: %s", operation, user.id, mode.value, exc)
        emit_event("ledger_write_failed", operation=operation, user_id=user.id, course_id=course_id, mode=mode)
        return LedgerErr(LedgerErrorReason.WRITE_FAILED, "Your course progress could not be saved. Try again.")


__all__ = ["EnrollmentLedger"]
