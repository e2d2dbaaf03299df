"""Main FastAPI application."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from parallel_dialer.core.dependencies import get_dialer
from parallel_dialer.core.errors import CommandError, DialError
from parallel_dialer.core.logging import setup_logging
from parallel_dialer.db.database import dispose_db, init_db
from parallel_dialer.api import dialer, events, health
from parallel_dialer.api.webhooks import voice

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    setup_logging()
    await init_db()
    jobs = get_dialer().jobs
    await jobs.start()
    yield
    # Shutdown
    await jobs.stop(drain=True)
    await dispose_db()


app = FastAPI(
    title="Parallel Dialer",
    description="Parallel dialer orchestration for call-center agents",
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(DialError)
async def dial_error_handler(request: Request, exc: DialError):
    logger.warning(f"[DIAL] {exc.code} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(CommandError)
async def command_error_handler(request: Request, exc: CommandError):
    logger.warning(f"[COMMAND] {exc.code} on {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": exc.message, "code": exc.code},
    )


app.include_router(health.router, tags=["health"])
app.include_router(voice.router, prefix="/webhooks", tags=["webhooks"])
app.include_router(dialer.router, tags=["dialer"])
app.include_router(events.router, tags=["events"])


@app.get("/")
async def root():
    return {"message": "Parallel Dialer API", "version": "0.1.0"}
