"""Remote and local user stores sharing one API, plus the best-effort snapshot mirror."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from .db.session import session_scope
from .errors import SnapshotError
from .local_snapshot import LocalSnapshotStore, LocalUserRecord
from .models import BackendMode, CompletionRecord, Role, User, UserProfile
from .repositories.users import users as user_repository
from .telemetry import emit_event

logger = logging.getLogger(__name__)


class RemoteUserStore:
    """Database-backed store; each call runs in its own transaction."""

    def probe(self) -> None:
        with session_scope(commit=False) as session:
            user_repository.probe(session)

    def load_user(self, user_id: str) -> Optional[User]:
        with session_scope(commit=False) as session:
            return user_repository.get(session, user_id)

    def email_exists(self, email: str) -> bool:
        with session_scope(commit=False) as session:
            return user_repository.email_exists(session, email)

    def create_user(self, user_id: str, profile: UserProfile, *, role: Role) -> User:
        with session_scope() as session:
            return user_repository.create(session, user_id, profile, role=role)

    def record_audit(self, user_id: Optional[str], event_type: str, payload: Dict[str, Any]) -> None:
        with session_scope() as session:
            user_repository.record_audit(session, user_id, event_type, payload)

    def add_enrollments(self, user_id: str, course_ids: Iterable[str]) -> List[str]:
        with session_scope() as session:
            return user_repository.add_enrollments(session, user_id, course_ids)

    def record_completion(self, user_id: str, course_id: str) -> Tuple[CompletionRecord, bool]:
        with session_scope() as session:
            return user_repository.upsert_completion(session, user_id, course_id)

    def mark_completed(self, user_id: str, course_id: str) -> None:
        with session_scope() as session:
            user_repository.mark_completed(session, user_id, course_id)

    def mark_certificate_issued(self, user_id: str, course_id: str) -> None:
        with session_scope() as session:
            user_repository.mark_certificate_issued(session, user_id, course_id)

    def pending_certificates(self, user_id: Optional[str] = None) -> List[CompletionRecord]:
        with session_scope(commit=False) as session:
            return user_repository.pending_certificates(session, user_id)

    def update_profile(self, user_id: str, fields: Dict[str, Any]) -> None:
        with session_scope() as session:
            user_repository.update_profile(session, user_id, fields)


class LocalUserStore:
    """Snapshot-backed store that writes the ``all_users`` table."""

    def __init__(self, snapshot: LocalSnapshotStore) -> None:
        self._snapshot = snapshot

    def load_user(self, user_id: str) -> Optional[User]:
        record = self._snapshot.get_user(user_id)
        return record.to_user() if record else None

    def find_by_email(self, email: str) -> Optional[LocalUserRecord]:
        return self._snapshot.find_by_email(email)

    def create_user(self, record: LocalUserRecord) -> User:
        return self._snapshot.upsert_user(record).to_user()

    def add_enrollments(self, user_id: str, course_ids: Iterable[str]) -> List[str]:
        inserted: List[str] = []

        def _apply(record: LocalUserRecord) -> None:
            known = record.enrolled_courses | record.completed_courses
            for course_id in sorted(set(course_ids)):
                if course_id not in known:
                    record.enrolled_courses.add(course_id)
                    inserted.append(course_id)

        self._snapshot.update_user(user_id, _apply)
        return inserted

    def record_completion(self, user_id: str, course_id: str) -> Tuple[CompletionRecord, bool]:
        outcome: Dict[str, Any] = {}

        def _apply(record: LocalUserRecord) -> None:
            existing = record.completion(course_id)
            if existing is None:
                existing = CompletionRecord(user_id=user_id, course_id=course_id)
                record.completions.append(existing)
                outcome["created"] = True
            outcome["record"] = existing.model_copy()

        self._snapshot.update_user(user_id, _apply)
        return outcome["record"], bool(outcome.get("created"))

    def mark_completed(self, user_id: str, course_id: str) -> None:
        def _apply(record: LocalUserRecord) -> None:
            record.enrolled_courses.discard(course_id)
            record.completed_courses.add(course_id)

        self._snapshot.update_user(user_id, _apply)

    def mark_certificate_issued(self, user_id: str, course_id: str) -> None:
        def _apply(record: LocalUserRecord) -> None:
            existing = record.completion(course_id)
            if existing is None:
                raise LookupError(f"No completion record for user '{user_id}' and course '{course_id}'.")
            if existing.certificate_issued_at is None:
                existing.certificate_issued_at = datetime.now(timezone.utc)

        self._snapshot.update_user(user_id, _apply)

    def pending_certificates(self, user_id: Optional[str] = None) -> List[CompletionRecord]:
        pending: List[CompletionRecord] = []
        for record in self._snapshot.all_users():
            if user_id is not None and record.id != user_id:
                continue
            pending.extend(entry for entry in record.completions if entry.certificate_pending)
        return sorted(pending, key=lambda entry: entry.completed_at)

    def update_profile(self, user_id: str, fields: Dict[str, Any]) -> None:
        def _apply(record: LocalUserRecord) -> None:
            # Same uniqueness rule as users.email in the remote schema; the
            # snapshot lock is re-entrant so the lookup sees the same document.
            email = fields.get("email")
            if email:
                holder = self._snapshot.find_by_email(email)
                if holder is not None and holder.id != user_id:
                    raise SnapshotError(f"Email {email} already belongs to another local account.")
            record.profile = record.profile.model_copy(update=fields)

        self._snapshot.update_user(user_id, _apply)


ActiveStore = Union[RemoteUserStore, LocalUserStore]


@dataclass
class UserStores:
    """Both backends plus the snapshot, selected per call by ``BackendMode``."""

    remote: RemoteUserStore
    local: LocalUserStore
    snapshot: LocalSnapshotStore

    @classmethod
    def from_snapshot(cls, snapshot: LocalSnapshotStore) -> "UserStores":
        return cls(remote=RemoteUserStore(), local=LocalUserStore(snapshot), snapshot=snapshot)

    def for_mode(self, mode: BackendMode) -> ActiveStore:
        return self.remote if mode is BackendMode.REMOTE else self.local

    def mirror(
        self,
        user: User,
        *,
        mode: BackendMode,
        credential_hash: Optional[str] = None,
        set_current: bool = True,
    ) -> bool:
        """Copy ``user`` into the snapshot; failures are logged, never raised.

        In remote mode the local user table row is refreshed too, so an
        offline login later sees the same id, profile and course sets.
        """
        try:
            if mode is BackendMode.REMOTE:
                existing = self.snapshot.get_user(user.id)
                record = LocalUserRecord.from_user(
                    user,
                    credential_hash=credential_hash or (existing.credential_hash if existing else None),
                    completions=existing.completions if existing else None,
                )
                self.snapshot.upsert_user(record)
            if set_current:
                self.snapshot.set_current_user(user)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Local snapshot mirror failed for user %s: %s", user.id, exc)
            emit_event("snapshot_mirror_failed", user_id=user.id, mode=mode, error=str(exc))
            return False
        return True


__all__ = ["ActiveStore", "LocalUserStore", "RemoteUserStore", "UserStores"]
