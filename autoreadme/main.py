"""FastAPI application: the webhook intake side of autoreadme.

Only verification, filtering and enqueueing happen here. Jobs are run by
``autoreadme.worker`` in a separate process sharing the same database.
"""

import logging
import re
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from sqlalchemy import text

from . import __version__
from .database import engine, init_db, SessionLocal, DATABASE_URL
from .api import webhooks_router
from .core.config import settings, ConfigurationError, Environment
from .core.logging_config import setup_logging
from .middleware.exception_handler import readme_bot_exception_handler
from .middleware.request_context import RequestContextMiddleware
from .exceptions import ReadmeBotError
from .services import audit_service
from .worker import build_job_queue

setup_logging(log_level=settings.log_level, log_format=settings.log_format)
logger = logging.getLogger(__name__)

VERSION = __version__

_DB_HINTS = {
    "postgresql": "Is PostgreSQL running, and are the DATABASE_URL credentials right?",
    "sqlite": "Does the database directory exist, and is it writable?",
}


def _mask_url(url: str) -> str:
    """Hide the password in a database URL: ``user:secret@`` -> ``user:***@``."""
    return re.sub(r'://([^:]+):([^@]+)@', r'://\1:***@', url)


def _check_database() -> None:
    masked = _mask_url(DATABASE_URL)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        hint = next((h for scheme, h in _DB_HINTS.items() if DATABASE_URL.startswith(scheme)), "Check DATABASE_URL.")
        logger.critical(f"Database unreachable at {masked}. {hint} Error: {e}")
        raise SystemExit(1) from e
    logger.info(f"Database reachable: {masked}")


def _purge_audit_log() -> None:
    if settings.audit_retention_days <= 0:
        return
    db = SessionLocal()
    try:
        purged = audit_service.purge_old_entries(db, days=settings.audit_retention_days)
    finally:
        db.close()
    if purged:
        logger.info(f"Purged {purged} audit entries older than {settings.audit_retention_days} days")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting autoreadme API {VERSION} ({settings.environment.value})")
    try:
        settings.validate_production_config()
    except ConfigurationError as e:
        logger.critical(f"STARTUP BLOCKED: {e}")
        raise SystemExit(1) from e

    if settings.environment == Environment.DEVELOPMENT and not settings.github_webhook_secret:
        logger.warning("SECURITY: GITHUB_WEBHOOK_SECRET is empty; every delivery will be rejected with 401")

    _check_database()
    init_db()
    _purge_audit_log()
    yield


app = FastAPI(
    title="autoreadme",
    description=(
        "Regenerates a repository's README on every push. "
        "GitHub delivers push webhooks here; a separate worker pool reads the "
        "code, calls the language model and commits the result."
    ),
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(RequestContextMiddleware)
app.add_exception_handler(ReadmeBotError, readme_bot_exception_handler)

# Routes reach the queue through app.state.
app.state.job_queue = build_job_queue(settings, SessionLocal)

app.include_router(webhooks_router)

_started_at = time.monotonic()


@app.get("/")
def root():
    return {"name": "autoreadme", "version": VERSION, "status": "running"}


@app.get("/health")
def health_check(request: Request):
    """Database status, uptime and the number of jobs waiting.

    Reports ``degraded`` instead of raising so probes never see a 5xx.
    """
    try:
        queued_jobs = request.app.state.job_queue.count_by_status().get("queued", 0)
        db_status = "ok"
    except Exception as e:
        logger.warning(f"Health check could not reach the database: {e}")
        queued_jobs = 0
        db_status = "error"

    return {
        "status": "healthy" if db_status == "ok" else "degraded",
        "db": db_status,
        "uptime_seconds": round(time.monotonic() - _started_at),
        "version": VERSION,
        "queued_jobs": queued_jobs,
    }
