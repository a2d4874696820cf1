import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from neon_scheduler.core.config import get_settings
from neon_scheduler.database.connection import SessionLocal
from neon_scheduler.services.dispatcher import Dispatcher
from neon_scheduler.services.execution_history import execution_history
from neon_scheduler.services.scheduler_service import scheduler_service

logger = logging.getLogger(__name__)

_scheduler_task: Optional[asyncio.Task] = None
_running: bool = False


def get_dispatcher() -> Dispatcher:
    return scheduler_service.get_dispatcher()


async def _scheduler_loop() -> None:
    settings = get_settings()
    poll_interval = settings.scheduler_poll_interval_seconds

    while _running:
        try:
            await _tick()
        except Exception as exc:
            logger.exception("Scheduler loop tick failed: %s", exc)
        await asyncio.sleep(poll_interval)


async def _tick() -> None:
    now = datetime.now(timezone.utc)
    await get_dispatcher().tick(now)

    db = SessionLocal()
    try:
        execution_history.apply_retention(db, now)
    finally:
        db.close()


async def start_scheduler() -> None:
    global _scheduler_task, _running
    settings = get_settings()
    if not settings.scheduler_enabled:
        logger.info("Scheduler is disabled via configuration")
        return
    if _scheduler_task is not None:
        return
    _running = True
    _scheduler_task = asyncio.create_task(_scheduler_loop())
    logger.info(
        "Scheduler started (poll every %ss, max concurrency %s)",
        settings.scheduler_poll_interval_seconds,
        get_dispatcher().max_concurrency,
    )


async def stop_scheduler() -> None:
    global _scheduler_task, _running
    _running = False
    if _scheduler_task is not None:
        # Ticks only yield while sleeping, so cancelling never interrupts a claim
        _scheduler_task.cancel()
        try:
            await _scheduler_task
        except asyncio.CancelledError:
            pass
        finally:
            _scheduler_task = None
            logger.info("Scheduler stopped")

    dispatcher = scheduler_service.dispatcher
    if dispatcher is not None:
        await dispatcher.shutdown(get_settings().scheduler_shutdown_timeout_seconds)
