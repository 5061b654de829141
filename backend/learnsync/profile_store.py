"""Partial merge updates for scalar profile fields."""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, Mapping

from .models import PROFILE_FIELDS, BackendMode, LedgerErr, LedgerErrorReason, LedgerOk, LedgerResult, User, normalize_email
from .stores import UserStores
from .telemetry import emit_event

logger = logging.getLogger(__name__)

PROTECTED_FIELDS = {"id", "role", "created_at", "enrolled_courses", "completed_courses"}
_FIELD_ALIASES = {"avatar": "avatar_ref", "avatar_url": "avatar_ref"}
_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def _snake_case(key: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", key).lower()


class ProfileStore:
    def __init__(self, stores: UserStores) -> None:
        self._stores = stores

    def normalize_fields(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        """Keep only writable profile keys; protected and unknown keys are dropped."""
        accepted: Dict[str, Any] = {}
        for raw_key, value in fields.items():
            key = _snake_case(raw_key)
            key = _FIELD_ALIASES.get(key, key)
            if key in PROTECTED_FIELDS:
                logger.debug("Ignoring attempt to set protected field %s through a profile update", key)
                continue
            if key not in PROFILE_FIELDS:
                logger.warning("Ignoring unknown profile field %s", raw_key)
                continue
            if key == "avatar_ref":
                accepted[key] = value if value else None
                continue
            if value is None:
                value = ""
            if not isinstance(value, str):
                raise ValueError(f"Profile field '{key}' must be a string.")
            accepted[key] = normalize_email(value) if key == "email" else value.strip()
        return accepted

    def update_profile(self, mode: BackendMode, user: User, fields: Mapping[str, Any]) -> LedgerResult:
        updates = self.normalize_fields(fields)
        if not updates:
            return LedgerOk()

        try:
            self._stores.for_mode(mode).update_profile(user.id, updates)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Profile update failed for %s in %s mode: %s", user.id, mode.value, exc)
            emit_event("profile_update_failed", user_id=user.id, mode=mode, fields=sorted(updates))
            return LedgerErr(LedgerErrorReason.WRITE_FAILED, "Your profile could not be saved. Try again.")

        user.profile = user.profile.model_copy(update=updates)
        emit_event("profile_updated", user_id=user.id, mode=mode, fields=sorted(updates))
        self._stores.mirror(user, mode=mode)
        return LedgerOk()


__all__ = ["PROTECTED_FIELDS", "ProfileStore"]
