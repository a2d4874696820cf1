import copy
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from neon_scheduler.core.agent_registry import AgentHandlerRegistry, agent_registry
from neon_scheduler.core.config import get_settings
from neon_scheduler.core.errors import SchedulerError, UnknownAgentType
from neon_scheduler.schemas.scheduler import (
    AgentConfig,
    CronPattern,
    CronValidation,
    DeleteResponse,
    ExecutionOutcome,
    ExecutionRecord,
    ExecutionStatistics,
    RetryConfig,
    Schedule,
    ScheduleCreate,
    SchedulerHealth,
    SchedulerStatistics,
    ScheduleRunStatus,
    ScheduleTemplate,
    ScheduleUpdate,
    TemplateCustomizations,
    TimezoneOption,
    TriggerResponse,
)
from neon_scheduler.services import cron_engine, schedule_presets
from neon_scheduler.services.dispatcher import Dispatcher
from neon_scheduler.services.execution_history import execution_history
from neon_scheduler.services.schedule_store import schedule_store

logger = logging.getLogger(__name__)


class SchedulerService:
    """Request/response operations offered to the dashboard.

    Validation happens here, before anything is written; dispatch itself is
    delegated to the attached :class:`Dispatcher`.
    """

    def __init__(self, registry: AgentHandlerRegistry = agent_registry) -> None:
        self.settings = get_settings()
        self.registry = registry
        self.store = schedule_store
        self.history = execution_history
        self.dispatcher: Optional[Dispatcher] = None

    def get_dispatcher(self) -> Dispatcher:
        if self.dispatcher is None:
            self.dispatcher = Dispatcher(self.registry, store=self.store, history=self.history)
        return self.dispatcher

    # --- Validation ---

    def _ensure_agent_type(self, agent_type: str) -> None:
        if agent_type not in self.registry:
            raise UnknownAgentType(f"Unknown agent type: {agent_type}")

    def _validate_cadence(self, cron: str, timezone_name: str) -> None:
        cron_engine.validate_cron(cron)
        cron_engine.validate_timezone(timezone_name)

    # --- Schedules ---

    def list_schedules(self, db: Session, enabled: Optional[bool] = None) -> List[Schedule]:
        return self.store.list_schedules(db, enabled=enabled)

    def get_schedule(self, db: Session, schedule_id: int) -> Schedule:
        return self.store.get_schedule(db, schedule_id)

    def create_schedule(
        self,
        db: Session,
        schedule_in: ScheduleCreate,
        template_id: Optional[str] = None,
    ) -> Schedule:
        self._ensure_agent_type(schedule_in.agent_type)
        timezone_name = schedule_in.timezone or self.settings.scheduler_default_timezone
        self._validate_cadence(schedule_in.cron, timezone_name)

        if not schedule_in.name:
            schedule_in = schedule_in.model_copy(
                update={
                    "name": schedule_presets.generate_schedule_name(
                        schedule_in.agent_type, cron_engine.describe_cron(schedule_in.cron)
                    )
                }
            )

        now = datetime.now(timezone.utc)
        next_run = cron_engine.compute_next_run(schedule_in.cron, timezone_name, now)
        schedule = self.store.create_schedule(
            db,
            schedule_in,
            timezone_name=timezone_name,
            next_run=next_run,
            template_id=template_id,
        )
        logger.info(
            "Created schedule %s for %s (%s %s), next run %s",
            schedule.id,
            schedule.agent_type,
            schedule.cron,
            schedule.timezone,
            next_run.isoformat(),
        )
        return schedule

    def update_schedule(self, db: Session, schedule_id: int, schedule_in: ScheduleUpdate) -> Schedule:
        current = self.store.get_schedule(db, schedule_id)
        fields = schedule_in.model_fields_set - {"id"}

        changes: Dict[str, Any] = {}
        for field in ("agent_type", "name", "description", "cron", "timezone", "enabled", "config", "timeout_ms"):
            if field in fields and getattr(schedule_in, field) is not None:
                changes[field] = getattr(schedule_in, field)
        if "retry_config" in fields and schedule_in.retry_config is not None:
            changes["retry_config"] = schedule_in.retry_config

        if "agent_type" in changes:
            self._ensure_agent_type(changes["agent_type"])

        cron = changes.get("cron", current.cron)
        timezone_name = changes.get("timezone", current.timezone)
        cadence_changed = "cron" in changes or "timezone" in changes
        re_enabled = changes.get("enabled") is True and not current.enabled
        if cadence_changed:
            self._validate_cadence(cron, timezone_name)

        if cadence_changed or re_enabled:
            changes["next_run_at"] = cron_engine.compute_next_run(
                cron, timezone_name, datetime.now(timezone.utc)
            )
            if current.last_status != ScheduleRunStatus.RUNNING:
                changes["retry_count"] = 0

        schedule = self.store.update_schedule(db, schedule_id, changes)
        logger.info("Updated schedule %s (%s)", schedule_id, ", ".join(sorted(changes)) or "no changes")
        return schedule

    def delete_schedule(self, db: Session, schedule_id: int) -> DeleteResponse:
        self.store.delete_schedule(db, schedule_id)
        logger.info("Deleted schedule %s", schedule_id)
        return DeleteResponse(id=schedule_id)

    def toggle_schedule(self, db: Session, schedule_id: int, enabled: bool) -> Schedule:
        next_run = None
        current = self.store.get_schedule(db, schedule_id)
        # Enabling an already enabled schedule leaves its retry sequence alone
        if enabled and not current.enabled:
            next_run = cron_engine.compute_next_run(
                current.cron, current.timezone, datetime.now(timezone.utc)
            )
        schedule = self.store.set_enabled(db, schedule_id, enabled, next_run=next_run)
        logger.info("Schedule %s %s", schedule_id, "enabled" if enabled else "disabled")
        return schedule

    async def trigger_schedule(self, schedule_id: int) -> TriggerResponse:
        return await self.get_dispatcher().trigger(schedule_id)

    # --- History ---

    def get_execution_history(
        self,
        db: Session,
        schedule_id: int,
        outcome: Optional[ExecutionOutcome] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[ExecutionRecord]:
        self.store.get_schedule(db, schedule_id)
        return self.history.query(db, schedule_id=schedule_id, outcome=outcome, limit=limit, offset=offset)

    def get_schedule_statistics(
        self,
        db: Session,
        schedule_id: int,
        window_days: Optional[int] = None,
    ) -> ExecutionStatistics:
        self.store.get_schedule(db, schedule_id)
        return self.history.compute_statistics(db, schedule_id=schedule_id, window_days=window_days)

    def get_statistics(self, db: Session) -> SchedulerStatistics:
        counts = self.store.count_schedules(db)
        outcomes = self.history.outcome_counts(db)
        finalized = outcomes["success"] + outcomes["failed"]
        average = round(outcomes["success"] * 100.0 / finalized, 2) if finalized else 0.0
        return SchedulerStatistics(
            total_schedules=counts["total"],
            active_schedules=counts["active"],
            average_success_rate=average,
            total_executions=outcomes["total"],
            successful_executions=outcomes["success"],
            failed_executions=outcomes["failed"],
        )

    def health(self, db: Session) -> SchedulerHealth:
        dispatcher = self.dispatcher
        return SchedulerHealth(
            status="ok",
            dispatcher_running=dispatcher is not None and dispatcher.accepting,
            in_flight=dispatcher.in_flight if dispatcher is not None else 0,
            registered_agents=self.registry.agent_types(),
            statistics=self.get_statistics(db),
        )

    # --- Templates and presets ---

    def get_templates(
        self,
        agent_type: Optional[str] = None,
        tag: Optional[str] = None,
    ) -> List[ScheduleTemplate]:
        return schedule_presets.list_templates(agent_type=agent_type, tag=tag)

    def create_from_template(
        self,
        db: Session,
        template_id: str,
        customizations: Optional[TemplateCustomizations] = None,
    ) -> Schedule:
        template = schedule_presets.get_template(template_id)
        values: Dict[str, Any] = {
            "agent_type": template.agent_type,
            "name": template.name,
            "description": template.description,
            "cron": template.cron,
            "timezone": template.timezone,
            "enabled": True,
            "config": copy.deepcopy(template.config),
            "retry_config": RetryConfig(**template.retry_config.model_dump()),
            "timeout_ms": template.timeout_ms,
        }
        if customizations is not None:
            for field in customizations.model_fields_set:
                value = getattr(customizations, field)
                if value is not None:
                    values[field] = copy.deepcopy(value)

        return self.create_schedule(db, ScheduleCreate(**values), template_id=template.id)

    def get_cron_patterns(self) -> List[CronPattern]:
        return list(schedule_presets.CRON_PATTERNS)

    def get_timezone_options(self) -> List[TimezoneOption]:
        return schedule_presets.timezone_options()

    def get_retry_presets(self) -> Dict[str, RetryConfig]:
        return dict(schedule_presets.RETRY_PRESETS)

    def get_agent_configs(self) -> Dict[str, AgentConfig]:
        return self.registry.describe()

    def get_recommended_schedules(self, agent_type: str) -> List[ScheduleTemplate]:
        return schedule_presets.recommended_templates(agent_type)

    def validate_cron(self, cron: str, timezone_name: Optional[str] = None) -> CronValidation:
        timezone_name = timezone_name or self.settings.scheduler_default_timezone
        try:
            next_executions = cron_engine.get_next_executions(cron, timezone_name, count=5)
        except SchedulerError as exc:
            return CronValidation(
                expression=cron,
                timezone=timezone_name,
                is_valid=False,
                description=cron_engine.describe_cron(cron),
                error=exc.message,
            )
        return CronValidation(
            expression=cron,
            timezone=timezone_name,
            is_valid=True,
            description=cron_engine.describe_cron(cron),
            next_executions=next_executions,
        )


scheduler_service = SchedulerService()
