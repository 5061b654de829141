"""Database-backed repository for identities, enrollments and completion records."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from ..db.models import (
    ENROLLMENT_STATUS_COMPLETED,
    ENROLLMENT_STATUS_ENROLLED,
    CourseCompletionModel,
    PersistenceAuditEventModel,
    UserCourseModel,
    UserModel,
)
from ..models import CompletionRecord, Role, User, UserProfile, normalize_email

_COLUMN_FOR_FIELD = {"avatar_ref": "avatar_url"}


class UserRepository:
    """Row-level access to the remote identity and enrollment tables."""

    def probe(self, session: Session) -> None:
        session.execute(select(UserModel.id).limit(1)).first()

    def get(self, session: Session, user_id: str) -> User | None:
        stmt = select(UserModel).options(selectinload(UserModel.courses)).where(UserModel.id == user_id)
        model = session.execute(stmt).scalar_one_or_none()
        if model is None:
            return None
        return self._to_domain(model)

    def email_exists(self, session: Session, email: str) -> bool:
        stmt = select(UserModel.id).where(UserModel.email == normalize_email(email))
        return session.execute(stmt).first() is not None

    def create(
        self,
        session: Session,
        user_id: str,
        profile: UserProfile,
        *,
        role: Role,
        created_at: Optional[datetime] = None,
    ) -> User:
        timestamp = created_at or datetime.now(timezone.utc)
        model = UserModel(
            id=user_id,
            first_name=profile.first_name,
            last_name=profile.last_name,
            email=normalize_email(profile.email),
            phone=profile.phone,
            role=role.value,
            bio=profile.bio or None,
            location=profile.location or None,
            occupation=profile.occupation or None,
            education=profile.education or None,
            avatar_url=profile.avatar_ref,
            created_at=timestamp,
            updated_at=timestamp,
        )
        session.add(model)
        session.flush()
        self.record_audit(session, user_id, "profile_created", {"role": role.value})
        return self._to_domain(model)

    def update_profile(self, session: Session, user_id: str, fields: Dict[str, Any]) -> None:
        model = self._require_model(session, user_id)
        for field, value in fields.items():
            column = _COLUMN_FOR_FIELD.get(field, field)
            if field == "email" and isinstance(value, str):
                value = normalize_email(value)
            setattr(model, column, value)
        model.updated_at = datetime.now(timezone.utc)
        session.flush()
        self.record_audit(session, user_id, "profile_update", {"fields": sorted(fields)})

    def course_statuses(self, session: Session, user_id: str) -> Dict[str, str]:
        stmt = select(UserCourseModel.course_id, UserCourseModel.status).where(UserCourseModel.user_id == user_id)
        return {course_id: status for course_id, status in session.execute(stmt).all()}

    def add_enrollments(self, session: Session, user_id: str, course_ids: Iterable[str]) -> List[str]:
        """Insert enrollment rows for ids without any existing row; returns the ids written."""
        existing = self.course_statuses(session, user_id)
        inserted: List[str] = []
        for course_id in sorted(set(course_ids)):
            if course_id in existing:
                continue
            session.add(
                UserCourseModel(
                    user_id=user_id,
                    course_id=course_id,
                    status=ENROLLMENT_STATUS_ENROLLED,
                    progress=0,
                )
            )
            inserted.append(course_id)
        if inserted:
            session.flush()
            self.record_audit(session, user_id, "enrollment_added", {"course_ids": inserted})
        return inserted

    def mark_completed(self, session: Session, user_id: str, course_id: str) -> None:
        stmt = select(UserCourseModel).where(
            UserCourseModel.user_id == user_id,
            UserCourseModel.course_id == course_id,
        )
        row = session.execute(stmt).scalar_one_or_none()
        if row is None:
            session.add(
                UserCourseModel(
                    user_id=user_id,
                    course_id=course_id,
                    status=ENROLLMENT_STATUS_COMPLETED,
                    progress=100,
                )
            )
        elif row.status != ENROLLMENT_STATUS_COMPLETED:
            row.status = ENROLLMENT_STATUS_COMPLETED
            row.progress = 100
        else:
            return
        session.flush()

    def upsert_completion(self, session: Session, user_id: str, course_id: str) -> Tuple[CompletionRecord, bool]:
        model = self._completion(session, user_id, course_id)
        created = False
        if model is None:
            model = CourseCompletionModel(user_id=user_id, course_id=course_id)
            session.add(model)
            session.flush()
            created = True
            self.record_audit(session, user_id, "completion_recorded", {"course_id": course_id})
        return self._completion_to_domain(model), created

    def mark_certificate_issued(
        self,
        session: Session,
        user_id: str,
        course_id: str,
        issued_at: Optional[datetime] = None,
    ) -> None:
        model = self._completion(session, user_id, course_id)
        if model is None:
            raise LookupError(f"No completion record for user '{user_id}' and course '{course_id}'.")
        if model.certificate_issued_at is None:
            model.certificate_issued_at = issued_at or datetime.now(timezone.utc)
            session.flush()

    def pending_certificates(self, session: Session, user_id: Optional[str] = None) -> List[CompletionRecord]:
        stmt = select(CourseCompletionModel).where(CourseCompletionModel.certificate_issued_at.is_(None))
        if user_id is not None:
            stmt = stmt.where(CourseCompletionModel.user_id == user_id)
        stmt = stmt.order_by(CourseCompletionModel.completed_at.asc())
        return [self._completion_to_domain(model) for model in session.execute(stmt).scalars().all()]

    def record_audit(
        self,
        session: Session,
        user_id: Optional[str],
        event_type: str,
        payload: Dict[str, Any],
    ) -> None:
        session.add(PersistenceAuditEventModel(user_id=user_id, event_type=event_type, payload=payload))

    def _require_model(self, session: Session, user_id: str) -> UserModel:
        model = session.get(UserModel, user_id)
        if model is None:
            raise LookupError(f"User '{user_id}' was not found.")
        return model

    @staticmethod
    def _completion(session: Session, user_id: str, course_id: str) -> CourseCompletionModel | None:
        stmt = select(CourseCompletionModel).where(
            CourseCompletionModel.user_id == user_id,
            CourseCompletionModel.course_id == course_id,
        )
        return session.execute(stmt).scalar_one_or_none()

    @staticmethod
    def _completion_to_domain(model: CourseCompletionModel) -> CompletionRecord:
        return CompletionRecord(
            user_id=model.user_id,
            course_id=model.course_id,
            completed_at=model.completed_at,
            certificate_issued_at=model.certificate_issued_at,
        )

    @staticmethod
    def _to_domain(model: UserModel) -> User:
        profile = UserProfile(
            first_name=model.first_name or "",
            last_name=model.last_name or "",
            email=model.email,
            phone=model.phone or "",
            bio=model.bio or "",
            location=model.location or "",
            occupation=model.occupation or "",
            education=model.education or "",
            avatar_ref=model.avatar_url,
        )
        enrolled = {row.course_id for row in model.courses if row.status == ENROLLMENT_STATUS_ENROLLED}
        completed = {row.course_id for row in model.courses if row.status == ENROLLMENT_STATUS_COMPLETED}
        return User(
            id=model.id,
            role=Role(model.role),
            profile=profile,
            enrolled_courses=enrolled,
            completed_courses=completed,
            created_at=model.created_at,
        )


users = UserRepository()

__all__ = ["UserRepository", "users"]
