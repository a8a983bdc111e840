"""
Editorial Clock API service.

Wires the deadline engine behind FastAPI:
- Per-stage time limits, reminders and escalations for manuscripts
- The reviewer invitation state machine (invite, remind, respond, withdraw)
- Exactly-once fire events and the notification outbox
- Background job scheduling
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from editorial_clock.core.config import settings
from editorial_clock.core.exceptions import EditorialClockException
from editorial_clock.api.routes import (
    stage_router,
    manuscript_router,
    invitation_router,
    admin_router,
)
from editorial_clock.services.container import get_services
from editorial_clock.services.scheduler import get_scheduler, scheduler_lifespan


logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
    - Wire services over the configured store (seeds default stages)
    - Start the background scheduler when RUN_SCHEDULER=true

    Shutdown:
    - Stop the scheduler gracefully
    """
    logger.info(f"🚀 Starting {settings.app_name} v{settings.app_version}")
    logger.info(f"Debug mode: {settings.debug}")
    logger.info(f"Store backend: {settings.store_backend}")
    logger.info(f"Notification transport: {settings.notification_transport}")
    logger.info(f"Scheduler enabled: {settings.enable_scheduler}")
    logger.info(f"Run scheduler (this instance): {settings.run_scheduler}")

    get_services()

    async with scheduler_lifespan(app):
        app.state.scheduler = get_scheduler()
        yield

    logger.info(f"👋 {settings.app_name} stopped")


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="""
    # Editorial Clock - Deadline & Escalation Engine

    Tracks how long each manuscript spends in each workflow stage and
    drives reviewer invitations through their deadlines.

    ## Guarantees
    - Every reminder and escalation fires **at most once**, even across restarts
    - Missed fire times after downtime are caught up in chronological order
    - A reviewer's response and the auto-withdrawal timer never both win

    ## Reviewer Invitations
    - **invited** → reminded at the 7-day response deadline
    - **reminded** → withdrawn 7 days later if there is still no response
    - **accepted** starts a 21-day review deadline
    """,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)


# The reviewer response pages live on the frontend origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Global exception handler for EditorialClockExceptions
@app.exception_handler(EditorialClockException)
async def editorial_clock_exception_handler(request, exc: EditorialClockException):
    """Handle all EditorialClockException subclasses."""
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
    )


app.include_router(stage_router)
app.include_router(manuscript_router)
app.include_router(invitation_router)
app.include_router(admin_router)


@app.get("/health", tags=["System"])
async def health_check():
    """Liveness plus scheduler job health and the last tick."""
    scheduler_status = get_scheduler().get_health_status()

    return {
        "status": scheduler_status["status"],
        "service": settings.app_name,
        "version": settings.app_version,
        "debug": settings.debug,
        "store_backend": settings.store_backend,
        "scheduler": scheduler_status,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@app.get("/", tags=["System"])
async def root():
    return {
        "service": settings.app_name,
        "version": settings.app_version,
        "docs": "/docs" if settings.debug else None,
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "editorial_clock.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
