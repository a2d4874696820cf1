import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, List, Optional, Set, Tuple

from sqlalchemy.orm import Session

from neon_scheduler.core.agent_registry import AgentHandlerRegistry
from neon_scheduler.core.config import get_settings
from neon_scheduler.core.errors import (
    ConcurrentModification,
    InvalidCronExpression,
    InvalidTimezone,
    ScheduleNotFound,
    TimeoutExceeded,
)
from neon_scheduler.database.connection import SessionLocal
from neon_scheduler.schemas.scheduler import (
    ExecutionOutcome,
    Schedule,
    ScheduleRunStatus,
    TriggerResponse,
    TriggeringEvent,
)
from neon_scheduler.services.cron_engine import compute_next_run
from neon_scheduler.services.execution_history import ExecutionHistory, execution_history
from neon_scheduler.services.retry_policy import next_retry_delay
from neon_scheduler.services.schedule_store import ClaimedSchedule, ScheduleStore, schedule_store

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Dispatcher:
    """Claims due schedules and runs their agents with bounded concurrency.

    ``tick`` only claims and spawns; every claimed invocation runs as its own
    asyncio task, and its outcome is written back through a generation
    checked update so late or stale results never overwrite newer state.
    """

    def __init__(
        self,
        registry: AgentHandlerRegistry,
        store: ScheduleStore = schedule_store,
        history: ExecutionHistory = execution_history,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Callable[[], datetime] = _utcnow,
        max_concurrency: Optional[int] = None,
        claim_batch_size: Optional[int] = None,
    ) -> None:
        settings = get_settings()
        self.registry = registry
        self.store = store
        self.history = history
        self.session_factory = session_factory
        self.clock = clock
        self.max_concurrency = max_concurrency or settings.scheduler_max_concurrency
        self.claim_batch_size = claim_batch_size or settings.scheduler_claim_batch_size
        self._semaphore = asyncio.Semaphore(self.max_concurrency)
        self._tasks: Set[asyncio.Task] = set()
        self._accepting = True

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    @property
    def accepting(self) -> bool:
        return self._accepting

    async def tick(self, now: Optional[datetime] = None) -> List[ClaimedSchedule]:
        """Claim due schedules and start one task per claim. Never awaits handlers."""
        if not self._accepting:
            return []
        now = now or self.clock()
        free_slots = self.max_concurrency - self.in_flight
        if free_slots <= 0:
            logger.debug("All %s dispatch slots busy; skipping claim", self.max_concurrency)
            return []

        started: List[Tuple[ClaimedSchedule, int, TriggeringEvent]] = []
        db = self.session_factory()
        try:
            claims = self.store.claim_due_schedules(
                db, now, limit=min(self.claim_batch_size, free_slots)
            )
            for claim in claims:
                trigger = (
                    TriggeringEvent.RETRY if claim.schedule.retry_count > 0 else TriggeringEvent.CRON
                )
                try:
                    execution = self.history.start(
                        db,
                        schedule_id=claim.schedule.id,
                        agent_type=claim.schedule.agent_type,
                        trigger=trigger,
                        started_at=now,
                        retry_attempt=claim.schedule.retry_count,
                    )
                except Exception as exc:
                    logger.exception(
                        "Could not start execution for schedule %s: %s", claim.schedule.id, exc
                    )
                    self._release(db, claim)
                    continue
                started.append((claim, execution.id, trigger))
        finally:
            db.close()

        for claim, execution_id, trigger in started:
            logger.info(
                "Dispatching schedule %s (%s) as %s execution %s",
                claim.schedule.id,
                claim.schedule.agent_type,
                trigger.value,
                execution_id,
            )
            self._spawn(claim, execution_id, trigger)
        return [claim for claim, _, _ in started]

    async def trigger(self, schedule_id: int) -> TriggerResponse:
        """Run a schedule now, regardless of ``next_run`` and ``enabled``."""
        # A claim's lease starts now, so it must not queue behind busy slots
        if self.in_flight >= self.max_concurrency:
            raise ConcurrentModification(
                f"All {self.max_concurrency} dispatch slots are busy; try again later"
            )
        now = self.clock()
        db = self.session_factory()
        try:
            claim = self.store.claim_schedule(db, schedule_id, now)
            try:
                execution = self.history.start(
                    db,
                    schedule_id=claim.schedule.id,
                    agent_type=claim.schedule.agent_type,
                    trigger=TriggeringEvent.MANUAL,
                    started_at=now,
                    retry_attempt=claim.schedule.retry_count,
                )
            except Exception:
                self._release(db, claim)
                raise
        finally:
            db.close()

        logger.info("Manually triggered schedule %s as execution %s", schedule_id, execution.id)
        self._spawn(claim, execution.id, TriggeringEvent.MANUAL)
        return TriggerResponse(
            schedule_id=schedule_id,
            execution_id=execution.id,
            status=ScheduleRunStatus.RUNNING,
        )

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop accepting claims, wait for in-flight runs, then cancel stragglers.

        Cancelled runs keep their claim until the lease expires, after which
        another dispatcher picks them up again.
        """
        self._accepting = False
        if not self._tasks:
            return
        if timeout is None:
            timeout = get_settings().scheduler_shutdown_timeout_seconds
        _, pending = await asyncio.wait(list(self._tasks), timeout=timeout)
        if pending:
            logger.warning("Cancelling %s in-flight executions at shutdown", len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    def _release(self, db: Session, claim: ClaimedSchedule) -> None:
        db.rollback()
        try:
            if self.store.release_claim(db, claim):
                logger.info("Released claim on schedule %s", claim.schedule.id)
        except Exception as exc:
            logger.error(
                "Failed to release schedule %s; it stays claimed until its lease expires: %s",
                claim.schedule.id,
                exc,
            )

    def _spawn(self, claim: ClaimedSchedule, execution_id: int, trigger: TriggeringEvent) -> None:
        task = asyncio.create_task(self._run(claim, execution_id, trigger))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _timeout_seconds(self, schedule: Schedule) -> float:
        return schedule.timeout_ms / 1000.0

    async def _invoke(self, schedule: Schedule):
        try:
            return await asyncio.wait_for(
                self.registry.invoke(schedule.agent_type, schedule.config),
                timeout=self._timeout_seconds(schedule),
            )
        except asyncio.TimeoutError as exc:
            raise TimeoutExceeded(f"Execution timed out after {schedule.timeout_ms} ms") from exc

    async def _run(self, claim: ClaimedSchedule, execution_id: int, trigger: TriggeringEvent) -> None:
        schedule = claim.schedule
        error: Optional[str] = None
        output: Any = None

        try:
            async with self._semaphore:
                result = await self._invoke(schedule)
        except TimeoutExceeded as exc:
            outcome = ExecutionOutcome.TIMEOUT
            error = exc.message
            logger.warning("Schedule %s timed out (execution %s)", schedule.id, execution_id)
        except asyncio.CancelledError:
            self._finalize_cancelled(execution_id)
            raise
        except Exception as exc:
            outcome = ExecutionOutcome.FAILURE
            error = str(exc) or exc.__class__.__name__
            logger.warning(
                "Schedule %s failed (execution %s): %s", schedule.id, execution_id, error
            )
        else:
            output = result.output
            if result.success:
                outcome = ExecutionOutcome.SUCCESS
            else:
                outcome = ExecutionOutcome.FAILURE
                error = result.error or "Agent reported failure"
                logger.warning(
                    "Schedule %s reported failure (execution %s): %s",
                    schedule.id,
                    execution_id,
                    error,
                )

        try:
            self._complete(claim, execution_id, trigger, outcome, error, output)
        except Exception as exc:
            logger.exception("Failed to record outcome of execution %s: %s", execution_id, exc)

    def _complete(
        self,
        claim: ClaimedSchedule,
        execution_id: int,
        trigger: TriggeringEvent,
        outcome: ExecutionOutcome,
        error: Optional[str],
        output: Any,
    ) -> None:
        schedule_id = claim.schedule.id
        now = self.clock()
        db = self.session_factory()
        try:
            self.history.finalize(db, execution_id, outcome, now, error=error, result=output)

            try:
                current = self.store.get_schedule(db, schedule_id)
            except ScheduleNotFound:
                self._discard_deleted(db, schedule_id, execution_id)
                return

            status, next_run, retry_count, last_error = self._next_state(
                claim, current, outcome, error, now
            )
            success_rate = self.history.success_rate(db, schedule_id, now=now)
            try:
                self.store.record_outcome(
                    db,
                    schedule_id,
                    claim.generation,
                    status=status,
                    next_run=next_run,
                    retry_count=retry_count,
                    ran_at=now,
                    last_error=last_error,
                    success_rate=success_rate,
                )
            except ScheduleNotFound:
                self._discard_deleted(db, schedule_id, execution_id)
                return
            except ConcurrentModification:
                logger.warning(
                    "Discarding stale outcome of execution %s for schedule %s (generation %s)",
                    execution_id,
                    schedule_id,
                    claim.generation,
                )
                return

            logger.info(
                "Schedule %s %s via %s; next run %s",
                schedule_id,
                status.value,
                trigger.value,
                next_run.isoformat() if next_run else None,
            )
        finally:
            db.close()

    def _next_state(
        self,
        claim: ClaimedSchedule,
        current: Schedule,
        outcome: ExecutionOutcome,
        error: Optional[str],
        now: datetime,
    ) -> Tuple[ScheduleRunStatus, Optional[datetime], int, Optional[str]]:
        attempt = claim.schedule.retry_count

        if outcome == ExecutionOutcome.SUCCESS:
            next_run, cron_error = self._resume_cadence(claim, current, now)
            status = ScheduleRunStatus.FAILED if cron_error else ScheduleRunStatus.SUCCESS
            return status, next_run, 0, cron_error

        delay_ms = next_retry_delay(attempt, current.retry_config)
        if delay_ms is not None:
            logger.info(
                "Retrying schedule %s in %s ms (retry %s of %s)",
                current.id,
                delay_ms,
                attempt + 1,
                current.retry_config.max_retries,
            )
            return (
                ScheduleRunStatus.PENDING,
                now + timedelta(milliseconds=delay_ms),
                attempt + 1,
                error,
            )

        logger.warning(
            "Schedule %s exhausted %s retries; resuming regular cadence",
            current.id,
            current.retry_config.max_retries,
        )
        next_run, cron_error = self._resume_cadence(claim, current, now)
        return ScheduleRunStatus.FAILED, next_run, 0, cron_error or error

    def _resume_cadence(
        self,
        claim: ClaimedSchedule,
        current: Schedule,
        now: datetime,
    ) -> Tuple[Optional[datetime], Optional[str]]:
        # A future next_run outside a retry sequence is still valid: it was
        # either untouched by a manual run or recomputed by an edit.
        if claim.schedule.retry_count == 0 and current.next_run is not None and current.next_run > now:
            return current.next_run, None
        try:
            return compute_next_run(current.cron, current.timezone, now), None
        except (InvalidCronExpression, InvalidTimezone) as exc:
            logger.error("Cannot compute next run for schedule %s: %s", current.id, exc)
            return None, exc.message

    def _discard_deleted(self, db: Session, schedule_id: int, execution_id: int) -> None:
        logger.info(
            "Schedule %s was deleted during execution %s; discarding outcome",
            schedule_id,
            execution_id,
        )
        self.history.delete_for_schedule(db, schedule_id)

    def _finalize_cancelled(self, execution_id: int) -> None:
        db = self.session_factory()
        try:
            self.history.finalize(
                db,
                execution_id,
                ExecutionOutcome.FAILURE,
                self.clock(),
                error="Cancelled during shutdown",
            )
        except Exception as exc:
            logger.error("Failed to finalize cancelled execution %s: %s", execution_id, exc)
        finally:
            db.close()
