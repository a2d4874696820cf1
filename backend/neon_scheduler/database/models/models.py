from datetime import timezone

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Integer, JSON, String
from sqlalchemy.orm import relationship
from sqlalchemy.types import TypeDecorator

from ..connection import Base


class UTCDateTime(TypeDecorator):
    """Store naive UTC timestamps and hand back timezone-aware UTC datetimes.

    SQLite drops tzinfo on the way in, so values are normalised before binding
    and re-tagged on the way out. Comparisons against bound parameters go
    through the same conversion.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Schedule(Base):
    __tablename__ = "agent_schedules"

    id = Column(Integer, primary_key=True, index=True)
    agent_type = Column(String, nullable=False, index=True)
    name = Column(String, nullable=True)
    description = Column(String, nullable=True)
    cron = Column(String, nullable=False)
    timezone = Column(String, nullable=False, default="UTC")
    enabled = Column(Boolean, default=True, index=True)
    config = Column(JSON, default=dict)
    retry_config = Column(JSON, default=dict)
    timeout_ms = Column(Integer, nullable=False)
    next_run_at = Column(UTCDateTime, nullable=True, index=True)
    last_run_at = Column(UTCDateTime, nullable=True)
    last_status = Column(String, nullable=False, default="pending")
    last_error = Column(String, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    success_rate = Column(Float, nullable=False, default=0.0)
    generation = Column(Integer, nullable=False, default=0)
    lease_expires_at = Column(UTCDateTime, nullable=True)
    template_id = Column(String, nullable=True)
    created_at = Column(UTCDateTime)
    updated_at = Column(UTCDateTime)
    created_by = Column(String, nullable=True)

    executions = relationship(
        "ExecutionRecord",
        back_populates="schedule",
        cascade="all, delete-orphan",
    )


class ExecutionRecord(Base):
    __tablename__ = "schedule_executions"

    id = Column(Integer, primary_key=True, index=True)
    schedule_id = Column(Integer, ForeignKey("agent_schedules.id"), nullable=False, index=True)
    agent_type = Column(String, nullable=False)
    trigger = Column(String, nullable=False)
    started_at = Column(UTCDateTime, nullable=False, index=True)
    ended_at = Column(UTCDateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)
    outcome = Column(String, nullable=False, default="pending")
    retry_attempt = Column(Integer, nullable=False, default=0)
    error = Column(String, nullable=True)
    result = Column(JSON, nullable=True)

    schedule = relationship("Schedule", back_populates="executions")
