"""Database utilities for the remote store."""

from .session import (
    dispose_engine,
    engine_options,
    get_engine,
    get_session_factory,
    session_scope,
)

__all__ = [
    "dispose_engine",
    "engine_options",
    "get_engine",
    "get_session_factory",
    "session_scope",
]
