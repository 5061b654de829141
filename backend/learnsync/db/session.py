"""Engine and session helpers for the remote store.

The engine is created lazily on first use so that a process configured for
the local fallback never touches the database driver. Both the probe thread
and request handlers may ask for it, so creation is serialized.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Any, Dict, Generator, Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..config import Settings, get_settings

_IN_MEMORY_URLS = {"sqlite://", "sqlite:///:memory:"}


def engine_options(settings: Settings) -> Dict[str, Any]:
    """Keyword arguments for ``create_engine`` derived from settings."""
    url = settings.database_url
    if not url:
        raise RuntimeError("LEARNSYNC_DATABASE_URL must be configured before using the remote store.")

    options: Dict[str, Any] = {"echo": settings.database_echo, "pool_pre_ping": True}
    if url.startswith("sqlite"):
        # sqlite3 takes the busy timeout as ``timeout``; drivers for server
        # databases take ``connect_timeout``.
        options["connect_args"] = {"check_same_thread": False, "timeout": settings.connect_timeout}
        if url in _IN_MEMORY_URLS:
            options["poolclass"] = StaticPool
    else:
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            connect_args={"connect_timeout": settings.connect_timeout},
        )
    return options


class _EngineRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._engine: Optional[Engine] = None
        self._factory: Optional[sessionmaker[Session]] = None

    def factory(self) -> sessionmaker[Session]:
        with self._lock:
            if self._factory is None:
                settings = get_settings()
                self._engine = create_engine(settings.database_url or "", **engine_options(settings))
                self._factory = sessionmaker(bind=self._engine, autoflush=False, expire_on_commit=False)
            return self._factory

    def engine(self) -> Engine:
        self.factory()
        assert self._engine is not None
        return self._engine

    def dispose(self) -> None:
        with self._lock:
            if self._engine is not None:
                self._engine.dispose()
            self._engine = None
            self._factory = None


_registry = _EngineRegistry()


def get_engine() -> Engine:
    return _registry.engine()


def get_session_factory() -> sessionmaker[Session]:
    return _registry.factory()


@contextmanager
def session_scope(*, commit: bool = True) -> Generator[Session, None, None]:
    """Yield a session; commit on clean exit unless ``commit`` is false.

    Any exception rolls the session back and propagates unchanged.
    """
    session = get_session_factory()()
    try:
        yield session
        if commit:
            session.commit()
    except Exception:  # noqa: BLE001
        session.rollback()
        raise
    finally:
        session.close()


def dispose_engine() -> None:
    """Drop the cached engine; the next call rebuilds it from fresh settings."""
    _registry.dispose()


__all__ = [
    "dispose_engine",
    "engine_options",
    "get_engine",
    "get_session_factory",
    "session_scope",
]
