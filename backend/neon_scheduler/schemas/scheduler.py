from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base for wire models: snake_case in Python, camelCase in JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ScheduleRunStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    RUNNING = "running"


class ExecutionOutcome(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"


class TriggeringEvent(str, Enum):
    CRON = "cron"
    RETRY = "retry"
    MANUAL = "manual"


class RetryConfig(CamelModel):
    max_retries: int = Field(3, ge=0, le=10)
    retry_delay_ms: int = Field(
        5000,
        ge=1000,
        le=300000,
        validation_alias=AliasChoices("retryDelayMs", "retryDelay", "retry_delay_ms"),
    )
    backoff_multiplier: float = Field(2.0, ge=1, le=5)
    max_retry_delay_ms: int = Field(
        60000,
        ge=1000,
        le=600000,
        validation_alias=AliasChoices("maxRetryDelayMs", "maxRetryDelay", "max_retry_delay_ms"),
    )


class ScheduleCreate(CamelModel):
    """Form data accepted by createSchedule."""

    agent_type: str = Field(..., min_length=1)
    name: Optional[str] = None
    description: Optional[str] = None
    cron: str = "0 9 * * *"
    timezone: Optional[str] = None
    enabled: bool = True
    config: Dict[str, Any] = Field(default_factory=dict)
    retry_config: RetryConfig = Field(default_factory=RetryConfig)
    timeout_ms: int = Field(
        300000,
        ge=10000,
        le=1800000,
        validation_alias=AliasChoices("timeout", "timeoutMs", "timeout_ms"),
    )
    created_by: Optional[str] = None


class ScheduleUpdate(CamelModel):
    id: Optional[int] = None
    agent_type: Optional[str] = Field(None, min_length=1)
    name: Optional[str] = None
    description: Optional[str] = None
    cron: Optional[str] = None
    timezone: Optional[str] = None
    enabled: Optional[bool] = None
    config: Optional[Dict[str, Any]] = None
    retry_config: Optional[RetryConfig] = None
    timeout_ms: Optional[int] = Field(
        None,
        ge=10000,
        le=1800000,
        validation_alias=AliasChoices("timeout", "timeoutMs", "timeout_ms"),
    )


class ScheduleToggle(CamelModel):
    enabled: bool


class Schedule(CamelModel):
    id: int
    agent_type: str
    name: Optional[str] = None
    description: Optional[str] = None
    cron: str
    timezone: str
    enabled: bool
    config: Dict[str, Any] = Field(default_factory=dict)
    retry_config: RetryConfig
    timeout_ms: int
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None
    last_status: ScheduleRunStatus = ScheduleRunStatus.PENDING
    last_error: Optional[str] = None
    retry_count: int = 0
    success_rate: float = 0.0
    template_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    created_by: Optional[str] = None


class ScheduleTemplate(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    name: str
    description: str
    agent_type: str
    cron: str
    timezone: str = "UTC"
    config: Dict[str, Any] = Field(default_factory=dict)
    retry_config: RetryConfig = Field(default_factory=RetryConfig)
    timeout_ms: int = 300000
    tags: List[str] = Field(default_factory=list)


class TemplateCustomizations(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    cron: Optional[str] = None
    timezone: Optional[str] = None
    enabled: Optional[bool] = None
    config: Optional[Dict[str, Any]] = None
    retry_config: Optional[RetryConfig] = None
    timeout_ms: Optional[int] = Field(
        None,
        ge=10000,
        le=1800000,
        validation_alias=AliasChoices("timeout", "timeoutMs", "timeout_ms"),
    )
    created_by: Optional[str] = None


class CreateFromTemplateRequest(CamelModel):
    customizations: Optional[TemplateCustomizations] = Field(
        None,
        validation_alias=AliasChoices("customizations", "overrides"),
    )


class CronPattern(CamelModel):
    id: str
    name: str
    description: str
    expression: str
    examples: List[str] = Field(default_factory=list)


class TimezoneOption(CamelModel):
    value: str
    label: str
    offset: str


class AgentConfig(CamelModel):
    display_name: str
    description: str
    icon: Optional[str] = None
    color: Optional[str] = None
    default_tasks: List[str] = Field(default_factory=list)
    config_schema: Dict[str, Any] = Field(default_factory=dict)


class AgentResult(BaseModel):
    """What an agent handler reports back for one invocation."""

    success: bool = True
    output: Any = None
    error: Optional[str] = None


class ExecutionRecord(CamelModel):
    id: int
    schedule_id: int
    agent_type: str
    trigger: TriggeringEvent
    started_at: datetime
    ended_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    outcome: ExecutionOutcome
    retry_attempt: int = 0
    error: Optional[str] = None
    result: Any = None


class ExecutionStatistics(CamelModel):
    total_executions: int
    success_rate: float
    total_retries: int
    avg_duration_ms: float


class SchedulerStatistics(CamelModel):
    total_schedules: int
    active_schedules: int
    average_success_rate: float
    total_executions: int
    successful_executions: int
    failed_executions: int


class TriggerResponse(CamelModel):
    schedule_id: int
    execution_id: int
    status: ScheduleRunStatus


class DeleteResponse(CamelModel):
    id: int
    deleted: bool = True


class CronValidation(CamelModel):
    expression: str
    timezone: str
    is_valid: bool
    description: str
    next_executions: List[datetime] = Field(default_factory=list)
    error: Optional[str] = None


class SchedulerHealth(CamelModel):
    status: str
    dispatcher_running: bool
    in_flight: int
    registered_agents: List[str]
    statistics: SchedulerStatistics
