import logging
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from neon_scheduler.core.config import get_settings
from neon_scheduler.database.models import models as db_models
from neon_scheduler.schemas.scheduler import (
    ExecutionOutcome,
    ExecutionRecord,
    ExecutionStatistics,
    TriggeringEvent,
)

logger = logging.getLogger(__name__)

PENDING = ExecutionOutcome.PENDING.value
FAILED_OUTCOMES = (ExecutionOutcome.FAILURE.value, ExecutionOutcome.TIMEOUT.value)


class ExecutionHistory:
    """Append-only log of invocations, one record per claimed run."""

    def __init__(self) -> None:
        self.settings = get_settings()

    def start(
        self,
        db: Session,
        schedule_id: int,
        agent_type: str,
        trigger: TriggeringEvent,
        started_at: datetime,
        retry_attempt: int = 0,
    ) -> ExecutionRecord:
        db_record = db_models.ExecutionRecord(
            schedule_id=schedule_id,
            agent_type=agent_type,
            trigger=trigger.value,
            started_at=started_at,
            outcome=PENDING,
            retry_attempt=retry_attempt,
        )
        db.add(db_record)
        db.commit()
        db.refresh(db_record)
        return self._to_record_schema(db_record)

    def finalize(
        self,
        db: Session,
        execution_id: int,
        outcome: ExecutionOutcome,
        ended_at: datetime,
        error: Optional[str] = None,
        result: Any = None,
    ) -> Optional[ExecutionRecord]:
        """Close a pending record. Records are finalized at most once."""
        db_record = (
            db.query(db_models.ExecutionRecord)
            .filter(db_models.ExecutionRecord.id == execution_id)
            .first()
        )
        if db_record is None:
            logger.info("Execution record %s no longer exists; skipping finalize", execution_id)
            return None
        if db_record.outcome != PENDING:
            logger.warning(
                "Execution record %s already finalized as %s", execution_id, db_record.outcome
            )
            return self._to_record_schema(db_record)

        db_record.outcome = outcome.value
        db_record.ended_at = ended_at
        db_record.duration_ms = max(int((ended_at - db_record.started_at).total_seconds() * 1000), 0)
        db_record.error = error
        db_record.result = result
        db.add(db_record)
        db.commit()
        db.refresh(db_record)
        return self._to_record_schema(db_record)

    def append(self, db: Session, record: ExecutionRecord) -> ExecutionRecord:
        """Store an already completed record, e.g. one imported from elsewhere."""
        db_record = db_models.ExecutionRecord(
            schedule_id=record.schedule_id,
            agent_type=record.agent_type,
            trigger=record.trigger.value,
            started_at=record.started_at,
            ended_at=record.ended_at,
            duration_ms=record.duration_ms,
            outcome=record.outcome.value,
            retry_attempt=record.retry_attempt,
            error=record.error,
            result=record.result,
        )
        db.add(db_record)
        db.commit()
        db.refresh(db_record)
        return self._to_record_schema(db_record)

    def query(
        self,
        db: Session,
        schedule_id: Optional[int] = None,
        outcome: Optional[ExecutionOutcome] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[ExecutionRecord]:
        query = db.query(db_models.ExecutionRecord)
        if schedule_id is not None:
            query = query.filter(db_models.ExecutionRecord.schedule_id == schedule_id)
        if outcome is not None:
            query = query.filter(db_models.ExecutionRecord.outcome == outcome.value)
        rows = (
            query.order_by(
                db_models.ExecutionRecord.started_at.desc(),
                db_models.ExecutionRecord.id.desc(),
            )
            .offset(offset)
            .limit(limit)
            .all()
        )
        return [self._to_record_schema(row) for row in rows]

    def compute_statistics(
        self,
        db: Session,
        schedule_id: Optional[int] = None,
        window_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> ExecutionStatistics:
        query = self._window_query(db, schedule_id, window_days, now)
        total = query.count()
        finalized = query.filter(db_models.ExecutionRecord.outcome != PENDING)
        finalized_count = finalized.count()
        successes = finalized.filter(
            db_models.ExecutionRecord.outcome == ExecutionOutcome.SUCCESS.value
        ).count()
        retries = query.filter(
            db_models.ExecutionRecord.trigger == TriggeringEvent.RETRY.value
        ).count()
        avg_duration = finalized.with_entities(
            func.avg(db_models.ExecutionRecord.duration_ms)
        ).scalar()

        return ExecutionStatistics(
            total_executions=total,
            success_rate=_percentage(successes, finalized_count),
            total_retries=retries,
            avg_duration_ms=float(avg_duration or 0.0),
        )

    def success_rate(
        self,
        db: Session,
        schedule_id: int,
        window_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> float:
        """Percentage of finalized attempts that succeeded within the window."""
        if window_days is None:
            window_days = self.settings.success_rate_window_days
        finalized = self._window_query(db, schedule_id, window_days, now).filter(
            db_models.ExecutionRecord.outcome != PENDING
        )
        total = finalized.count()
        successes = finalized.filter(
            db_models.ExecutionRecord.outcome == ExecutionOutcome.SUCCESS.value
        ).count()
        return _percentage(successes, total)

    def outcome_counts(self, db: Session) -> dict:
        rows = (
            db.query(db_models.ExecutionRecord.outcome, func.count(db_models.ExecutionRecord.id))
            .group_by(db_models.ExecutionRecord.outcome)
            .all()
        )
        counts = {outcome: count for outcome, count in rows}
        return {
            "total": sum(counts.values()),
            "success": counts.get(ExecutionOutcome.SUCCESS.value, 0),
            "failed": sum(counts.get(outcome, 0) for outcome in FAILED_OUTCOMES),
        }

    def apply_retention(self, db: Session, now: datetime) -> int:
        """Evict finalized records older than the retention window, then trim
        each schedule's history to the configured maximum. Returns the number
        of deleted records."""
        deleted = 0
        retention_days = self.settings.history_retention_days
        if retention_days > 0:
            cutoff = now - timedelta(days=retention_days)
            deleted += (
                db.query(db_models.ExecutionRecord)
                .filter(
                    db_models.ExecutionRecord.started_at < cutoff,
                    db_models.ExecutionRecord.outcome != PENDING,
                )
                .delete(synchronize_session=False)
            )

        max_records = self.settings.history_max_records_per_schedule
        if max_records > 0:
            over_limit = (
                db.query(db_models.ExecutionRecord.schedule_id)
                .group_by(db_models.ExecutionRecord.schedule_id)
                .having(func.count(db_models.ExecutionRecord.id) > max_records)
                .all()
            )
            for (schedule_id,) in over_limit:
                keep_ids = [
                    row.id
                    for row in db.query(db_models.ExecutionRecord.id)
                    .filter(db_models.ExecutionRecord.schedule_id == schedule_id)
                    .order_by(
                        db_models.ExecutionRecord.started_at.desc(),
                        db_models.ExecutionRecord.id.desc(),
                    )
                    .limit(max_records)
                    .all()
                ]
                deleted += (
                    db.query(db_models.ExecutionRecord)
                    .filter(
                        db_models.ExecutionRecord.schedule_id == schedule_id,
                        db_models.ExecutionRecord.id.notin_(keep_ids),
                        db_models.ExecutionRecord.outcome != PENDING,
                    )
                    .delete(synchronize_session=False)
                )

        db.commit()
        if deleted:
            logger.info("Retention removed %s execution records", deleted)
        return deleted

    def delete_for_schedule(self, db: Session, schedule_id: int) -> int:
        deleted = (
            db.query(db_models.ExecutionRecord)
            .filter(db_models.ExecutionRecord.schedule_id == schedule_id)
            .delete(synchronize_session=False)
        )
        db.commit()
        return deleted

    def _window_query(
        self,
        db: Session,
        schedule_id: Optional[int],
        window_days: Optional[int],
        now: Optional[datetime],
    ):
        query = db.query(db_models.ExecutionRecord)
        if schedule_id is not None:
            query = query.filter(db_models.ExecutionRecord.schedule_id == schedule_id)
        if window_days:
            cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=window_days)
            query = query.filter(db_models.ExecutionRecord.started_at >= cutoff)
        return query

    def _to_record_schema(self, db_record: db_models.ExecutionRecord) -> ExecutionRecord:
        return ExecutionRecord(
            id=db_record.id,
            schedule_id=db_record.schedule_id,
            agent_type=db_record.agent_type,
            trigger=TriggeringEvent(db_record.trigger),
            started_at=db_record.started_at,
            ended_at=db_record.ended_at,
            duration_ms=db_record.duration_ms,
            outcome=ExecutionOutcome(db_record.outcome),
            retry_attempt=db_record.retry_attempt or 0,
            error=db_record.error,
            result=db_record.result,
        )


def _percentage(part: int, whole: int) -> float:
    if not whole:
        return 0.0
    return round(part * 100.0 / whole, 2)


execution_history = ExecutionHistory()
