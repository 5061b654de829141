"""One-shot reachability check that selects the process-wide backend mode."""

from __future__ import annotations

import logging
import threading
from time import perf_counter
from typing import Callable, Literal, Optional

from .models import BackendMode
from .stores import RemoteUserStore
from .telemetry import emit_event

logger = logging.getLogger(__name__)


class ConnectivityProbe:
    """Decides once whether the remote store is reachable.

    A single failed existence read selects ``LOCAL_FALLBACK`` for the rest of
    the process; there is no retry loop and no re-probe.
    """

    def __init__(
        self,
        check: Optional[Callable[[], None]] = None,
        *,
        configured_mode: Literal["auto", "remote", "local"] = "auto",
    ) -> None:
        self._check = check or RemoteUserStore().probe
        self._configured_mode = configured_mode
        self._mode: Optional[BackendMode] = None
        self._lock = threading.Lock()

    @property
    def mode(self) -> Optional[BackendMode]:
        return self._mode

    def check_connectivity(self) -> BackendMode:
        with self._lock:
            if self._mode is None:
                self._mode = self._decide()
            return self._mode

    def _decide(self) -> BackendMode:
        if self._configured_mode == "remote":
            logger.info("Backend mode forced to remote by configuration")
            return BackendMode.REMOTE
        if self._configured_mode == "local":
            logger.info("Backend mode forced to local fallback by configuration")
            return BackendMode.LOCAL_FALLBACK

        started = perf_counter()
        try:
            self._check()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Remote store unreachable; using local fallback for this process: %s", exc)
            mode = BackendMode.LOCAL_FALLBACK
            error: Optional[str] = type(exc).__name__
        else:
            logger.info("Remote store reachable")
            mode = BackendMode.REMOTE
            error = None
        emit_event(
            "connectivity_probe_completed",
            mode=mode,
            error=error,
            duration_ms=round((perf_counter() - started) * 1000, 2),
        )
        return mode


__all__ = ["ConnectivityProbe"]
