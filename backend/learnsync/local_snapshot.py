"""JSON-backed local fallback snapshot used when the remote store is unreachable."""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pydantic import Field, ValidationError

from .errors import SnapshotError
from .models import CompletionRecord, User, normalize_email

logger = logging.getLogger(__name__)

ALL_USERS_KEY = "all_users"
CURRENT_USER_KEY = "current_user"


class LocalUserRecord(User):
    """Row of the local user table; the only place a credential is persisted."""

    credential_hash: Optional[str] = None
    completions: List[CompletionRecord] = Field(default_factory=list)

    def to_user(self) -> User:
        return User.model_validate(self.model_dump(exclude={"credential_hash", "completions"}))

    @classmethod
    def from_user(
        cls,
        user: User,
        *,
        credential_hash: Optional[str] = None,
        completions: Optional[List[CompletionRecord]] = None,
    ) -> "LocalUserRecord":
        payload = user.model_dump()
        payload["credential_hash"] = credential_hash
        payload["completions"] = [record.model_dump() for record in completions or []]
        return cls.model_validate(payload)

    def completion(self, course_id: str) -> Optional[CompletionRecord]:
        for record in self.completions:
            if record.course_id == course_id:
                return record
        return None


class LocalSnapshotStore:
    """Whole-document key-value file with the ``all_users`` and ``current_user`` keys."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    def _load_unlocked(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {ALL_USERS_KEY: [], CURRENT_USER_KEY: None}
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                raw = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            raise SnapshotError(f"Local snapshot at {self._path} is unreadable: {exc}") from exc
        if not isinstance(raw, dict):
            raise SnapshotError(f"Local snapshot at {self._path} is not a mapping.")
        raw.setdefault(ALL_USERS_KEY, [])
        raw.setdefault(CURRENT_USER_KEY, None)
        return raw

    def _write_unlocked(self, document: Dict[str, Any]) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            staging = self._path.with_suffix(self._path.suffix + ".tmp")
            with staging.open("w", encoding="utf-8") as handle:
                json.dump(document, handle, indent=2)
            os.replace(staging, self._path)
        except OSError as exc:
            raise SnapshotError(f"Failed to write local snapshot at {self._path}: {exc}") from exc

    def _records_unlocked(self, document: Dict[str, Any]) -> List[LocalUserRecord]:
        records: List[LocalUserRecord] = []
        entries = document.get(ALL_USERS_KEY) or []
        if not isinstance(entries, list):
            raise SnapshotError("Local user table is not a list.")
        for entry in entries:
            try:
                records.append(LocalUserRecord.model_validate(entry))
            except ValidationError:
                logger.exception("Skipping malformed local user record")
        return records

    def all_users(self) -> List[LocalUserRecord]:
        with self._lock:
            return self._records_unlocked(self._load_unlocked())

    def find_by_email(self, email: str) -> Optional[LocalUserRecord]:
        normalized = normalize_email(email)
        for record in self.all_users():
            if normalize_email(record.email) == normalized:
                return record
        return None

    def get_user(self, user_id: str) -> Optional[LocalUserRecord]:
        for record in self.all_users():
            if record.id == user_id:
                return record
        return None

    def upsert_user(self, record: LocalUserRecord) -> LocalUserRecord:
        with self._lock:
            document = self._load_unlocked()
            records = [entry for entry in self._records_unlocked(document) if entry.id != record.id]
            records.append(record)
            document[ALL_USERS_KEY] = [entry.model_dump(mode="json") for entry in records]
            self._write_unlocked(document)
        return record

    def update_user(self, user_id: str, mutate: Callable[[LocalUserRecord], None]) -> LocalUserRecord:
        with self._lock:
            document = self._load_unlocked()
            records = self._records_unlocked(document)
            target = next((entry for entry in records if entry.id == user_id), None)
            if target is None:
                raise LookupError(f"Local user '{user_id}' was not found.")
            mutate(target)
            document[ALL_USERS_KEY] = [entry.model_dump(mode="json") for entry in records]
            self._write_unlocked(document)
            return target

    def current_user(self) -> Optional[User]:
        with self._lock:
            payload = self._load_unlocked().get(CURRENT_USER_KEY)
        if payload is None:
            return None
        try:
            return User.model_validate(payload)
        except ValidationError as exc:
            raise SnapshotError(f"Current user entry is malformed: {exc}") from exc

    def set_current_user(self, user: User) -> None:
        stripped = User.model_validate(user.model_dump())
        with self._lock:
            document = self._load_unlocked()
            document[CURRENT_USER_KEY] = stripped.model_dump(mode="json")
            self._write_unlocked(document)

    def clear_current_user(self) -> None:
        with self._lock:
            document = self._load_unlocked()
            if document.get(CURRENT_USER_KEY) is None:
                return
            document[CURRENT_USER_KEY] = None
            self._write_unlocked(document)


__all__ = ["ALL_USERS_KEY", "CURRENT_USER_KEY", "LocalSnapshotStore", "LocalUserRecord"]
