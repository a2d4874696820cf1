from typing import Dict, Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.orm import Session

from neon_scheduler.database.services.session import get_db
from neon_scheduler.schemas.scheduler import (
    AgentConfig,
    CreateFromTemplateRequest,
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
    ScheduleTemplate,
    ScheduleToggle,
    ScheduleUpdate,
    TimezoneOption,
    TriggerResponse,
)
from neon_scheduler.services.scheduler_service import scheduler_service

router = APIRouter(prefix="/scheduler", tags=["scheduler"])


# --- Catalogues and service-wide views ---


@router.get("/templates", response_model=list[ScheduleTemplate])
def get_schedule_templates(
    agent_type: Optional[str] = Query(None, alias="agentType"),
    tag: Optional[str] = None,
) -> list[ScheduleTemplate]:
    return scheduler_service.get_templates(agent_type=agent_type, tag=tag)


@router.post("/templates/{template_id}/schedules", response_model=Schedule)
def create_from_template(
    template_id: str,
    request: Optional[CreateFromTemplateRequest] = Body(None),
    db: Session = Depends(get_db),
) -> Schedule:
    customizations = request.customizations if request else None
    return scheduler_service.create_from_template(db, template_id, customizations)


@router.get("/cron-patterns", response_model=list[CronPattern])
def get_cron_patterns() -> list[CronPattern]:
    return scheduler_service.get_cron_patterns()


@router.get("/cron/validate", response_model=CronValidation)
def validate_cron(
    cron: str,
    timezone: Optional[str] = None,
) -> CronValidation:
    return scheduler_service.validate_cron(cron, timezone)


@router.get("/timezones", response_model=list[TimezoneOption])
def get_timezone_options() -> list[TimezoneOption]:
    return scheduler_service.get_timezone_options()


@router.get("/retry-presets", response_model=Dict[str, RetryConfig])
def get_retry_presets() -> Dict[str, RetryConfig]:
    return scheduler_service.get_retry_presets()


@router.get("/agents", response_model=Dict[str, AgentConfig])
def get_agent_configs() -> Dict[str, AgentConfig]:
    return scheduler_service.get_agent_configs()


@router.get("/agents/{agent_type}/recommended", response_model=list[ScheduleTemplate])
def get_recommended_schedules(agent_type: str) -> list[ScheduleTemplate]:
    return scheduler_service.get_recommended_schedules(agent_type)


@router.get("/statistics", response_model=SchedulerStatistics)
def get_statistics(db: Session = Depends(get_db)) -> SchedulerStatistics:
    return scheduler_service.get_statistics(db)


@router.get("/health", response_model=SchedulerHealth)
def health_check(db: Session = Depends(get_db)) -> SchedulerHealth:
    return scheduler_service.health(db)


# --- Schedules ---


@router.get("/schedules", response_model=list[Schedule])
def list_schedules(
    enabled: Optional[bool] = None,
    db: Session = Depends(get_db),
) -> list[Schedule]:
    return scheduler_service.list_schedules(db, enabled=enabled)


@router.post("/schedules", response_model=Schedule)
def create_schedule(
    schedule_in: ScheduleCreate,
    db: Session = Depends(get_db),
) -> Schedule:
    return scheduler_service.create_schedule(db, schedule_in)


@router.get("/schedules/{schedule_id}", response_model=Schedule)
def get_schedule(schedule_id: int, db: Session = Depends(get_db)) -> Schedule:
    return scheduler_service.get_schedule(db, schedule_id)


@router.put("/schedules/{schedule_id}", response_model=Schedule)
def update_schedule(
    schedule_id: int,
    schedule_in: ScheduleUpdate,
    db: Session = Depends(get_db),
) -> Schedule:
    return scheduler_service.update_schedule(db, schedule_id, schedule_in)


@router.delete("/schedules/{schedule_id}", response_model=DeleteResponse)
def delete_schedule(schedule_id: int, db: Session = Depends(get_db)) -> DeleteResponse:
    return scheduler_service.delete_schedule(db, schedule_id)


@router.post("/schedules/{schedule_id}/toggle", response_model=Schedule)
def toggle_schedule(
    schedule_id: int,
    toggle: ScheduleToggle,
    db: Session = Depends(get_db),
) -> Schedule:
    return scheduler_service.toggle_schedule(db, schedule_id, toggle.enabled)


@router.post("/schedules/{schedule_id}/trigger", response_model=TriggerResponse)
async def trigger_schedule(schedule_id: int) -> TriggerResponse:
    return await scheduler_service.trigger_schedule(schedule_id)


@router.get("/schedules/{schedule_id}/executions", response_model=list[ExecutionRecord])
def get_execution_history(
    schedule_id: int,
    outcome: Optional[ExecutionOutcome] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
) -> list[ExecutionRecord]:
    return scheduler_service.get_execution_history(
        db, schedule_id, outcome=outcome, limit=limit, offset=offset
    )


@router.get("/schedules/{schedule_id}/statistics", response_model=ExecutionStatistics)
def get_schedule_statistics(
    schedule_id: int,
    window_days: Optional[int] = Query(None, alias="windowDays", ge=1),
    db: Session = Depends(get_db),
) -> ExecutionStatistics:
    return scheduler_service.get_schedule_statistics(db, schedule_id, window_days=window_days)
