"""FastAPI entrypoint for the Exam Session & Integrity Engine."""

import logging
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from starlette.middleware.sessions import SessionMiddleware

from exam_integrity import database
from exam_integrity.config import Settings, get_settings
from exam_integrity.errors import EngineError
from exam_integrity.logging_config import setup_logging
from exam_integrity.routers import attempts as attempts_router_module
from exam_integrity.routers import auth as auth_router_module
from exam_integrity.routers import enrollment as enrollment_router_module
from exam_integrity.routers import proctoring as proctoring_router_module
from exam_integrity.services import build_services
from exam_integrity.utils import utcnow

logger = logging.getLogger(__name__)


async def engine_error_handler(request: Request, exc: EngineError):
    """Map engine failures to JSON; CrossTenant shares NotFound's response."""
    content = {"detail": exc.message, "code": exc.code}
    event_id = getattr(exc, "event_id", None)
    if event_id is not None:
        content["event_id"] = event_id
    if exc.status_code >= 500:
        logger.warning("%s %s -> %s", request.method, request.url.path, exc.code)
    return JSONResponse(status_code=exc.status_code, content=content)


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    clock: Callable = utcnow,
) -> FastAPI:
    settings = settings or get_settings()
    if engine is None:
        engine = database.make_engine(settings.DATABASE_URL, echo=settings.DATABASE_ECHO)
    setup_logging(settings.LOG_LEVEL)

    app = FastAPI(title=settings.APP_NAME)
    app.state.engine = engine
    app.state.services = build_services(engine, settings, clock=clock)

    app.add_exception_handler(EngineError, engine_error_handler)

    # Session middleware for cookie-based sessions
    app.add_middleware(SessionMiddleware, secret_key=settings.SESSION_SECRET)

    app.include_router(auth_router_module.router, prefix="/auth", tags=["auth"])
    app.include_router(auth_router_module.public_router, prefix="/public", tags=["public"])
    app.include_router(enrollment_router_module.router, prefix="/batches", tags=["enrollment"])
    app.include_router(attempts_router_module.router, tags=["attempts"])
    app.include_router(proctoring_router_module.router, tags=["proctoring"])

    @app.on_event("startup")
    def on_startup() -> None:
        database.create_db_and_tables(engine)
        logger.info("%s started", settings.APP_NAME)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


app = create_app()
