"""ORM models backing the remote store."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import JSON

from .base import Base, TimestampMixin

JSONType = JSON

ENROLLMENT_STATUS_ENROLLED = "enrolled"
ENROLLMENT_STATUS_COMPLETED = "completed"


class UserModel(TimestampMixin, Base):
    __tablename__ = "users"
    __table_args__ = (Index("ix_users_email", "email", unique=True),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    first_name: Mapped[str] = mapped_column(String(128), default="", nullable=False)
    last_name: Mapped[str] = mapped_column(String(128), default="", nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    phone: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    role: Mapped[str] = mapped_column(String(16), default="learner", nullable=False)
    bio: Mapped[str | None] = mapped_column(Text)
    location: Mapped[str | None] = mapped_column(String(255))
    occupation: Mapped[str | None] = mapped_column(String(255))
    education: Mapped[str | None] = mapped_column(String(255))
    avatar_url: Mapped[str | None] = mapped_column(Text)

    courses: Mapped[list["UserCourseModel"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )
    completions: Mapped[list["CourseCompletionModel"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )


class UserCourseModel(TimestampMixin, Base):
    __tablename__ = "user_courses"
    __table_args__ = (
        Index("ix_user_courses_user", "user_id"),
        UniqueConstraint("user_id", "course_id", name="uq_user_course"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    course_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=ENROLLMENT_STATUS_ENROLLED, nullable=False)
    progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    user: Mapped[UserModel] = relationship(back_populates="courses")


class CourseCompletionModel(Base):
    __tablename__ = "course_completions"
    __table_args__ = (
        Index("ix_course_completions_pending", "certificate_issued_at"),
        UniqueConstraint("user_id", "course_id", name="uq_course_completion"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    course_id: Mapped[str] = mapped_column(String(128), nullable=False)
    completed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    certificate_issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    user: Mapped[UserModel] = relationship(back_populates="completions")


class PersistenceAuditEventModel(Base):
    __tablename__ = "persistence_audit_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc)
    )


__all__ = [
    "CourseCompletionModel",
    "ENROLLMENT_STATUS_COMPLETED",
    "ENROLLMENT_STATUS_ENROLLED",
    "PersistenceAuditEventModel",
    "UserCourseModel",
    "UserModel",
]
