import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from neon_scheduler.core.config import get_settings
from neon_scheduler.core.errors import ConcurrentModification, ScheduleNotFound
from neon_scheduler.database.models import models as db_models
from neon_scheduler.schemas.scheduler import (
    ExecutionOutcome,
    RetryConfig,
    Schedule,
    ScheduleCreate,
    ScheduleRunStatus,
)

logger = logging.getLogger(__name__)

RUNNING = ScheduleRunStatus.RUNNING.value


@dataclass(frozen=True)
class ClaimedSchedule:
    """Snapshot of a schedule taken when it was moved to ``running``.

    ``generation`` identifies this claim; outcomes recorded under any other
    generation are rejected.
    """

    schedule: Schedule
    generation: int
    previous_next_run: Optional[datetime]
    previous_status: ScheduleRunStatus = ScheduleRunStatus.PENDING


class ScheduleStore:
    def __init__(self) -> None:
        self.settings = get_settings()

    # --- CRUD ---

    def create_schedule(
        self,
        db: Session,
        schedule_in: ScheduleCreate,
        timezone_name: str,
        next_run: Optional[datetime],
        template_id: Optional[str] = None,
    ) -> Schedule:
        now = datetime.now(timezone.utc)
        db_schedule = db_models.Schedule(
            agent_type=schedule_in.agent_type,
            name=schedule_in.name,
            description=schedule_in.description,
            cron=schedule_in.cron,
            timezone=timezone_name,
            enabled=schedule_in.enabled,
            config=dict(schedule_in.config),
            retry_config=schedule_in.retry_config.model_dump(),
            timeout_ms=schedule_in.timeout_ms,
            next_run_at=next_run,
            last_run_at=None,
            last_status=ScheduleRunStatus.PENDING.value,
            last_error=None,
            retry_count=0,
            success_rate=0.0,
            generation=0,
            lease_expires_at=None,
            template_id=template_id,
            created_at=now,
            updated_at=now,
            created_by=schedule_in.created_by,
        )
        db.add(db_schedule)
        db.commit()
        db.refresh(db_schedule)
        return self._to_schedule_schema(db_schedule)

    def get_schedule(self, db: Session, schedule_id: int) -> Schedule:
        return self._to_schedule_schema(self._get_row(db, schedule_id))

    def list_schedules(self, db: Session, enabled: Optional[bool] = None) -> List[Schedule]:
        query = db.query(db_models.Schedule)
        if enabled is not None:
            query = query.filter(db_models.Schedule.enabled.is_(enabled))
        rows = query.order_by(db_models.Schedule.id.desc()).all()
        return [self._to_schedule_schema(row) for row in rows]

    def update_schedule(self, db: Session, schedule_id: int, changes: Dict[str, Any]) -> Schedule:
        """Apply user edits. ``changes`` maps column names to new values."""
        db_schedule = self._get_row(db, schedule_id)
        for column, value in changes.items():
            if column == "retry_config" and isinstance(value, RetryConfig):
                value = value.model_dump()
            setattr(db_schedule, column, value)
        db_schedule.updated_at = datetime.now(timezone.utc)
        db.add(db_schedule)
        db.commit()
        db.refresh(db_schedule)
        return self._to_schedule_schema(db_schedule)

    def set_enabled(
        self,
        db: Session,
        schedule_id: int,
        enabled: bool,
        next_run: Optional[datetime] = None,
    ) -> Schedule:
        db_schedule = self._get_row(db, schedule_id)
        db_schedule.enabled = enabled
        # Re-enabling restarts the cadence unless an invocation is in flight
        if enabled and next_run is not None and db_schedule.last_status != RUNNING:
            db_schedule.next_run_at = next_run
            db_schedule.retry_count = 0
        db_schedule.updated_at = datetime.now(timezone.utc)
        db.add(db_schedule)
        db.commit()
        db.refresh(db_schedule)
        return self._to_schedule_schema(db_schedule)

    def delete_schedule(self, db: Session, schedule_id: int) -> None:
        db_schedule = self._get_row(db, schedule_id)
        db.delete(db_schedule)
        db.commit()

    def count_schedules(self, db: Session) -> Dict[str, int]:
        total = db.query(db_models.Schedule).count()
        active = db.query(db_models.Schedule).filter(db_models.Schedule.enabled.is_(True)).count()
        return {"total": total, "active": active}

    # --- Atomic transitions ---

    def claim_due_schedules(
        self,
        db: Session,
        now: datetime,
        limit: Optional[int] = None,
    ) -> List[ClaimedSchedule]:
        """Move every due, enabled, idle schedule to ``running``.

        Each row is claimed with a conditional update on its generation, so
        concurrent callers never claim the same schedule twice. Running
        schedules whose lease has expired count as idle.
        """
        S = db_models.Schedule
        query = (
            db.query(S.id)
            .filter(
                S.enabled.is_(True),
                S.next_run_at.isnot(None),
                S.next_run_at <= now,
                self._claimable_clause(now),
            )
            .order_by(S.next_run_at, S.id)
        )
        if limit is not None:
            query = query.limit(limit)
        candidate_ids = [row.id for row in query.all()]

        claimed: List[ClaimedSchedule] = []
        for schedule_id in candidate_ids:
            claim = self._claim_with_retry(db, schedule_id, now, require_due=True)
            if claim is not None:
                claimed.append(claim)
        return claimed

    def claim_schedule(self, db: Session, schedule_id: int, now: datetime) -> ClaimedSchedule:
        """Claim one schedule for a manual run, ignoring ``next_run`` and ``enabled``."""
        claim = self._claim_with_retry(db, schedule_id, now, require_due=False)
        if claim is None:
            raise ConcurrentModification(f"Schedule {schedule_id} already has a run in progress")
        return claim

    def record_outcome(
        self,
        db: Session,
        schedule_id: int,
        generation: int,
        *,
        status: ScheduleRunStatus,
        next_run: Optional[datetime],
        retry_count: int,
        ran_at: datetime,
        last_error: Optional[str] = None,
        success_rate: Optional[float] = None,
    ) -> None:
        """Write the result of a claimed run in a single conditional update."""
        S = db_models.Schedule
        values: Dict[Any, Any] = {
            S.last_status: status.value,
            S.next_run_at: next_run,
            S.retry_count: retry_count,
            S.last_run_at: ran_at,
            S.last_error: last_error,
            S.lease_expires_at: None,
        }
        if success_rate is not None:
            values[S.success_rate] = success_rate

        updated = (
            db.query(S)
            .filter(S.id == schedule_id, S.generation == generation, S.last_status == RUNNING)
            .update(values, synchronize_session=False)
        )
        if updated == 1:
            db.commit()
            return

        db.rollback()
        if db.query(S.id).filter(S.id == schedule_id).first() is None:
            raise ScheduleNotFound(schedule_id)
        raise ConcurrentModification(
            f"Schedule {schedule_id} no longer holds claim generation {generation}"
        )

    def release_claim(self, db: Session, claim: ClaimedSchedule) -> bool:
        """Give back a claim whose run never started, leaving ``next_run`` as it was."""
        S = db_models.Schedule
        status = claim.previous_status
        if status == ScheduleRunStatus.RUNNING:
            status = ScheduleRunStatus.PENDING
        updated = (
            db.query(S)
            .filter(S.id == claim.schedule.id, S.generation == claim.generation, S.last_status == RUNNING)
            .update({S.last_status: status.value, S.lease_expires_at: None}, synchronize_session=False)
        )
        db.commit()
        return updated == 1

    # --- Internals ---

    def _claimable_clause(self, now: datetime):
        S = db_models.Schedule
        return or_(
            S.last_status != RUNNING,
            and_(S.lease_expires_at.isnot(None), S.lease_expires_at < now),
        )

    def _claim_with_retry(
        self,
        db: Session,
        schedule_id: int,
        now: datetime,
        require_due: bool,
    ) -> Optional[ClaimedSchedule]:
        for attempt in range(2):
            row = (
                db.query(db_models.Schedule)
                .filter(db_models.Schedule.id == schedule_id)
                .populate_existing()
                .first()
            )
            if row is None:
                if require_due:
                    return None
                raise ScheduleNotFound(schedule_id)
            if not self._is_claimable(row, now, require_due):
                return None
            try:
                return self._try_claim(db, row, now)
            except ConcurrentModification:
                logger.info(
                    "Lost claim race for schedule %s (attempt %s); re-reading",
                    schedule_id,
                    attempt + 1,
                )
        return None

    def _is_claimable(self, row: db_models.Schedule, now: datetime, require_due: bool) -> bool:
        if row.last_status == RUNNING and (row.lease_expires_at is None or row.lease_expires_at >= now):
            return False
        if require_due:
            return bool(row.enabled) and row.next_run_at is not None and row.next_run_at <= now
        return True

    def _try_claim(self, db: Session, row: db_models.Schedule, now: datetime) -> ClaimedSchedule:
        """Conditional update from ``row.generation`` to the next generation."""
        S = db_models.Schedule
        expected_generation = row.generation
        previous_next_run = row.next_run_at
        previous_status = ScheduleRunStatus(row.last_status)
        lease_expires_at = now + timedelta(
            milliseconds=row.timeout_ms,
            seconds=self.settings.scheduler_lease_grace_seconds,
        )
        updated = (
            db.query(S)
            .filter(
                S.id == row.id,
                S.generation == expected_generation,
                self._claimable_clause(now),
            )
            .update(
                {
                    S.last_status: RUNNING,
                    S.generation: expected_generation + 1,
                    S.lease_expires_at: lease_expires_at,
                },
                synchronize_session=False,
            )
        )
        if updated != 1:
            db.rollback()
            raise ConcurrentModification(f"Schedule {row.id} was claimed concurrently")
        if previous_status == ScheduleRunStatus.RUNNING:
            self._expire_pending_executions(db, row.id, now)
        db.commit()

        db.refresh(row)
        return ClaimedSchedule(
            schedule=self._to_schedule_schema(row),
            generation=expected_generation + 1,
            previous_next_run=previous_next_run,
            previous_status=previous_status,
        )

    def _expire_pending_executions(self, db: Session, schedule_id: int, now: datetime) -> None:
        """Close records left pending by the claim whose lease just expired."""
        R = db_models.ExecutionRecord
        records = (
            db.query(R)
            .filter(R.schedule_id == schedule_id, R.outcome == ExecutionOutcome.PENDING.value)
            .all()
        )
        for record in records:
            record.outcome = ExecutionOutcome.TIMEOUT.value
            record.ended_at = now
            record.duration_ms = max(int((now - record.started_at).total_seconds() * 1000), 0)
            record.error = "Lease expired"
            db.add(record)
        if records:
            logger.warning(
                "Lease of schedule %s expired; closed %s pending executions as timeout",
                schedule_id,
                len(records),
            )

    def _get_row(self, db: Session, schedule_id: int) -> db_models.Schedule:
        row = db.query(db_models.Schedule).filter(db_models.Schedule.id == schedule_id).first()
        if row is None:
            raise ScheduleNotFound(schedule_id)
        return row

    def _to_schedule_schema(self, db_schedule: db_models.Schedule) -> Schedule:
        return Schedule(
            id=db_schedule.id,
            agent_type=db_schedule.agent_type,
            name=db_schedule.name,
            description=db_schedule.description,
            cron=db_schedule.cron,
            timezone=db_schedule.timezone,
            enabled=bool(db_schedule.enabled),
            config=db_schedule.config or {},
            retry_config=RetryConfig(**(db_schedule.retry_config or {})),
            timeout_ms=db_schedule.timeout_ms,
            next_run=db_schedule.next_run_at,
            last_run=db_schedule.last_run_at,
            last_status=ScheduleRunStatus(db_schedule.last_status),
            last_error=db_schedule.last_error,
            retry_count=db_schedule.retry_count or 0,
            success_rate=db_schedule.success_rate or 0.0,
            template_id=db_schedule.template_id,
            created_at=db_schedule.created_at,
            updated_at=db_schedule.updated_at,
            created_by=db_schedule.created_by,
        )


schedule_store = ScheduleStore()
