import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from starlette.responses import JSONResponse

from .db.session import dispose_engine, get_engine
from .errors import ConsistencyError, SessionNotRestoredError
from .logging_config import configure_logging
from .session_manager import SessionManager, build_session_manager
from .session_routes import router as session_router


configure_logging()
logger = logging.getLogger(__name__)


def create_app(manager: Optional[SessionManager] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        session_manager = manager or build_session_manager()
        state = session_manager.restore_session()
        logger.info("Session restored: status=%s source=%s mode=%s", state.status.value, state.source, session_manager.mode)
        app.state.session_manager = session_manager
        try:
            yield
        finally:
            dispose_engine()

    application = FastAPI(title="LearnSync Session Service", version="0.1.0", lifespan=lifespan)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @application.exception_handler(ConsistencyError)
    async def consistency_error_handler(request: Request, exc: ConsistencyError) -> JSONResponse:
        logger.error("Consistency failure on %s: %s", request.url.path, exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": {"reason": "consistency_failure", "message": str(exc), "consistency_failure": True}},
        )

    @application.exception_handler(SessionNotRestoredError)
    async def not_restored_handler(request: Request, exc: SessionNotRestoredError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"detail": str(exc)})

    @application.get("/healthz")
    def health(request: Request) -> Dict[str, Optional[str]]:
        session_manager: Optional[SessionManager] = getattr(request.app.state, "session_manager", None)
        mode = session_manager.mode if session_manager else None
        return {"status": "ok", "backend_mode": mode.value if mode else None}

    @application.get("/healthz/database")
    def database_health() -> Dict[str, str]:
        try:
            engine = get_engine()
            with engine.connect() as connection:
                connection.execute(text("SELECT 1"))
        except Exception as exc:  # noqa: BLE001
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
        return {"status": "ok", "pool": engine.pool.status()}

    application.include_router(session_router)
    return application


app = create_app()
