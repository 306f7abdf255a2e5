import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.api.jobs import router as jobs_router
from app.core.celery_settings import is_test_env
from app.core.config import settings
from app.core.logging import setup_logging
from app.services.runtime import build_runtime, start_runtime, stop_runtime

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging(settings.log_level)

    # Tests pre-assign a runtime bound to their own database.
    runtime = getattr(app.state, "runtime", None) or build_runtime(settings)
    app.state.runtime = runtime
    start_runtime(runtime, start_ticking=not is_test_env())
    logger.info("API started", extra={"env": settings.env})
    try:
        yield
    finally:
        stop_runtime(runtime)
        app.state.runtime = None
        logger.info("API stopped")


app = FastAPI(title="Notification Scheduler API", version="0.1.0", lifespan=lifespan)
app.include_router(jobs_router)


class HealthResponse(BaseModel):
    ok: bool
    service: str
    version: str
    db_ok: bool
    scheduler_active: bool
    queue_ready: bool


@app.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    runtime = getattr(app.state, "runtime", None)

    # lightweight DB check
    db_ok = False
    if runtime is not None:
        try:
            with runtime.session_factory() as db:
                db.execute(text("SELECT 1"))
            db_ok = True
        except SQLAlchemyError as exc:
            logger.warning("Health DB check failed", extra={"error": str(exc)})

    return HealthResponse(
        ok=True,
        service="api",
        version=app.version,
        db_ok=db_ok,
        scheduler_active=bool(runtime and runtime.scheduler.is_active()),
        queue_ready=bool(runtime and runtime.queue.is_ready()),
    )
