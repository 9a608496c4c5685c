import logging
from contextlib import asynccontextmanager

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from medaccess.config import settings
from medaccess.core.error_handling import (
    AccessGrantError, ErrorHandlingMiddleware, access_grant_exception_handler
)
from medaccess.database import Base, engine, SessionLocal, session_scope
from medaccess.routers import access_logs, access_tokens, doctor_access, emergency_access_router
from medaccess.services.access_token_store import AccessTokenStore
from medaccess.services.doctor_session_manager import DoctorSessionManager

logger = logging.getLogger(__name__)

CLEANUP_JOB_ID = "access_grant_cleanup"


def run_cleanup(manager: DoctorSessionManager, sweep_tokens: bool = settings.TOKEN_SWEEP_ENABLED):
    """Deactivate overdue doctor sessions and, optionally, stale access tokens"""
    try:
        manager.expire_overdue_sessions()
    except Exception as e:
        logger.error(f"Doctor session cleanup failed: {type(e).__name__}: {e}")

    if not sweep_tokens:
        return
    try:
        with session_scope(manager.session_factory) as db:
            AccessTokenStore(db, clock=manager.clock).expire_stale_tokens()
    except Exception as e:
        logger.error(f"Access token sweep failed: {type(e).__name__}: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    Base.metadata.create_all(bind=engine)

    scheduler = BackgroundScheduler()
    manager = DoctorSessionManager(session_factory=SessionLocal)
    manager.start(scheduler)
    scheduler.add_job(
        run_cleanup,
        IntervalTrigger(minutes=settings.TOKEN_SWEEP_INTERVAL_MINUTES),
        args=[manager],
        id=CLEANUP_JOB_ID,
        replace_existing=True,
        name="Access Grant Cleanup",
    )
    app.state.session_manager = manager
    logger.info("✅ Access grant services started")

    yield

    manager.stop()
    if scheduler.running:
        scheduler.shutdown(wait=False)
    app.state.session_manager = None
    logger.info("Access grant services stopped")


app = FastAPI(
    title="MedAccess API",
    description="Time-boxed patient record access via QR code and access key",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_exception_handler(AccessGrantError, access_grant_exception_handler)

app.include_router(access_tokens.router)
app.include_router(doctor_access.router)
app.include_router(emergency_access_router.router)
app.include_router(access_logs.router)


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "medaccess"}
