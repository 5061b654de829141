"""REST endpoints exposing the session manager to the client."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Literal, NoReturn, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from .models import (
    AuthErr,
    AuthErrorReason,
    BackendMode,
    LedgerErr,
    LedgerErrorReason,
    LedgerResult,
    RegistrationData,
    Role,
    SessionState,
    SessionStatus,
    User,
)
from .session_manager import SessionManager

router = APIRouter(prefix="/api/session", tags=["session"])
logger = logging.getLogger(__name__)

_AUTH_STATUS: Dict[AuthErrorReason, int] = {
    AuthErrorReason.INVALID_CREDENTIALS: status.HTTP_401_UNAUTHORIZED,
    AuthErrorReason.NOT_CONFIRMED: status.HTTP_403_FORBIDDEN,
    AuthErrorReason.DUPLICATE_USER: status.HTTP_409_CONFLICT,
    AuthErrorReason.UNREACHABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    AuthErrorReason.PROFILE_MISSING: status.HTTP_500_INTERNAL_SERVER_ERROR,
    AuthErrorReason.UNKNOWN: status.HTTP_500_INTERNAL_SERVER_ERROR,
}

_LEDGER_STATUS: Dict[LedgerErrorReason, int] = {
    LedgerErrorReason.NO_SESSION: status.HTTP_401_UNAUTHORIZED,
    LedgerErrorReason.WRITE_FAILED: status.HTTP_503_SERVICE_UNAVAILABLE,
    LedgerErrorReason.READ_FAILED: status.HTTP_503_SERVICE_UNAVAILABLE,
}


class UserPayload(BaseModel):
    id: str
    role: Role
    name: str
    first_name: str
    last_name: str
    email: str
    phone: str
    bio: str
    location: str
    occupation: str
    education: str
    avatar_ref: Optional[str] = None
    enrolled_courses: List[str] = Field(default_factory=list)
    completed_courses: List[str] = Field(default_factory=list)
    created_at: datetime


class SessionStatePayload(BaseModel):
    status: SessionStatus
    source: Optional[Literal["remote", "local"]] = None
    mode: Optional[BackendMode] = None
    user: Optional[UserPayload] = None


class LoginRequest(BaseModel):
    email: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class PasswordResetRequest(BaseModel):
    email: str = Field(..., min_length=1)


class EnrollmentRequest(BaseModel):
    course_ids: List[str] = Field(default_factory=list)


class ReconcileResponse(BaseModel):
    issued: int


def get_session_manager(request: Request) -> SessionManager:
    manager = getattr(request.app.state, "session_manager", None)
    if manager is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Session manager is not initialised.",
        )
    return manager


def _serialize_user(user: User) -> UserPayload:
    profile = user.profile
    return UserPayload(
        id=user.id,
        role=user.role,
        name=profile.name,
        first_name=profile.first_name,
        last_name=profile.last_name,
        email=profile.email,
        phone=profile.phone,
        bio=profile.bio,
        location=profile.location,
        occupation=profile.occupation,
        education=profile.education,
        avatar_ref=profile.avatar_ref,
        enrolled_courses=sorted(user.enrolled_courses),
        completed_courses=sorted(user.completed_courses),
        created_at=user.created_at,
    )


def _serialize_state(state: SessionState, mode: Optional[BackendMode]) -> SessionStatePayload:
    return SessionStatePayload(
        status=state.status,
        source=state.source,
        mode=mode,
        user=_serialize_user(state.user) if state.user else None,
    )


def _raise_auth_error(error: AuthErr) -> NoReturn:
    raise HTTPException(
        status_code=_AUTH_STATUS.get(error.reason, status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail={
            "reason": error.reason.value,
            "message": error.message,
            "consistency_failure": error.is_consistency_failure,
        },
    )


def _current_user_or_raise(result: LedgerResult, manager: SessionManager) -> UserPayload:
    if isinstance(result, LedgerErr):
        raise HTTPException(
            status_code=_LEDGER_STATUS.get(result.reason, status.HTTP_500_INTERNAL_SERVER_ERROR),
            detail={"reason": result.reason.value, "message": result.message, "consistency_failure": False},
        )
    user = manager.user
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="No active session.")
    return _serialize_user(user)


@router.get("", response_model=SessionStatePayload)
def get_session_state(manager: SessionManager = Depends(get_session_manager)) -> SessionStatePayload:
    return _serialize_state(manager.state, manager.mode)


@router.post("/login", response_model=SessionStatePayload)
def login(payload: LoginRequest, manager: SessionManager = Depends(get_session_manager)) -> SessionStatePayload:
    result = manager.login(payload.email, payload.password)
    if isinstance(result, AuthErr):
        _raise_auth_error(result)
    return _serialize_state(manager.state, manager.mode)


@router.post("/register", response_model=UserPayload, status_code=status.HTTP_201_CREATED)
def register(payload: RegistrationData, manager: SessionManager = Depends(get_session_manager)) -> UserPayload:
    result = manager.register(payload)
    if isinstance(result, AuthErr):
        _raise_auth_error(result)
    return _serialize_user(result.user)


@router.post("/logout", response_model=SessionStatePayload)
def logout(manager: SessionManager = Depends(get_session_manager)) -> SessionStatePayload:
    state = manager.logout()
    return _serialize_state(state, manager.mode)


@router.post("/password-reset", status_code=status.HTTP_202_ACCEPTED)
def request_password_reset(
    payload: PasswordResetRequest,
    manager: SessionManager = Depends(get_session_manager),
) -> Dict[str, str]:
    try:
        error = manager.reset_password(payload.email)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    if error is not None:
        _raise_auth_error(error)
    return {"status": "accepted"}


@router.put("/enrollments", response_model=UserPayload)
def set_enrollments(
    payload: EnrollmentRequest,
    manager: SessionManager = Depends(get_session_manager),
) -> UserPayload:
    return _current_user_or_raise(manager.set_enrollment(payload.course_ids), manager)


@router.post("/enrollments/refresh", response_model=UserPayload)
def refresh_enrollments(manager: SessionManager = Depends(get_session_manager)) -> UserPayload:
    return _current_user_or_raise(manager.refresh_enrollments(), manager)


@router.post("/courses/{course_id}/complete", response_model=UserPayload)
def complete_course(course_id: str, manager: SessionManager = Depends(get_session_manager)) -> UserPayload:
    try:
        result = manager.complete_course(course_id)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return _current_user_or_raise(result, manager)


@router.patch("/profile", response_model=UserPayload)
def update_profile(
    fields: Dict[str, Any] = Body(...),
    manager: SessionManager = Depends(get_session_manager),
) -> UserPayload:
    try:
        result = manager.update_profile(fields)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return _current_user_or_raise(result, manager)


@router.post("/certificates/reconcile", response_model=ReconcileResponse)
def reconcile_certificates(
    all_users: bool = Query(default=False),
    manager: SessionManager = Depends(get_session_manager),
) -> ReconcileResponse:
    issued = manager.reconcile_certificates(all_users=all_users)
    logger.info("Certificate reconciliation issued %s certificate(s)", issued)
    return ReconcileResponse(issued=issued)


__all__ = ["get_session_manager", "router"]
