import asyncio
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from neon_scheduler.agents.builtin import register_builtin_agents
from neon_scheduler.api.routes import scheduler
from neon_scheduler.core.config import get_settings
from neon_scheduler.core.errors import SchedulerError
from neon_scheduler.core.scheduler_manager import start_scheduler, stop_scheduler
from neon_scheduler.database.connection import Base, engine
import neon_scheduler.database.models.models  # noqa: F401
from neon_scheduler.services.scheduler_service import scheduler_service

logger = logging.getLogger(__name__)


async def wait_for_db_connection(retries: int = 10, delay_seconds: float = 3) -> None:
    """Retry database connection to handle startup ordering in containers."""
    for attempt in range(1, retries + 1):
        try:
            with engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            logger.info("Database connection established.")
            return
        except OperationalError as exc:
            if attempt == retries:
                logger.exception("Database unavailable after %s attempts.", retries)
                raise
            logger.info(
                "Database not ready (attempt %s/%s): %s. Retrying in %.1fs.",
                attempt,
                retries,
                exc,
                delay_seconds,
            )
            await asyncio.sleep(delay_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    await wait_for_db_connection()
    Base.metadata.create_all(bind=engine)
    register_builtin_agents(scheduler_service.registry)
    await start_scheduler()
    yield
    # Shutdown
    await stop_scheduler()


settings = get_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(
    title="Neon Agent Scheduler API",
    version=settings.backend_version,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SchedulerError)
async def scheduler_error_handler(request: Request, exc: SchedulerError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": exc.__class__.__name__},
    )


app.include_router(scheduler.router)


@app.get("/config")
async def get_config():
    """Get scheduler configuration."""
    return {
        "scheduler": {
            "enabled": settings.scheduler_enabled,
            "poll_interval_seconds": settings.scheduler_poll_interval_seconds,
            "max_concurrency": settings.scheduler_max_concurrency,
            "claim_batch_size": settings.scheduler_claim_batch_size,
            "default_timezone": settings.scheduler_default_timezone,
        },
        "history": {
            "retention_days": settings.history_retention_days,
            "max_records_per_schedule": settings.history_max_records_per_schedule,
            "success_rate_window_days": settings.success_rate_window_days,
        },
        "agents": sorted(settings.agent_endpoints),
    }


def run() -> None:
    uvicorn.run("neon_scheduler.main:app", host="0.0.0.0", port=settings.backend_port)
