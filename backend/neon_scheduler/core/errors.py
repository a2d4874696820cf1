"""Error kinds raised by the scheduling service.

Each error carries the HTTP status the API layer reports for it. Validation
errors reach callers of create/update operations; dispatch errors are absorbed
by the dispatcher and only show up in schedule state and execution history.
"""


class SchedulerError(Exception):
    status_code: int = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidCronExpression(SchedulerError):
    pass


class InvalidTimezone(SchedulerError):
    pass


class UnknownAgentType(SchedulerError):
    pass


class NotFound(SchedulerError):
    status_code = 404


class ScheduleNotFound(NotFound):
    def __init__(self, schedule_id: int) -> None:
        super().__init__(f"Schedule {schedule_id} not found")
        self.schedule_id = schedule_id


class TemplateNotFound(NotFound):
    def __init__(self, template_id: str) -> None:
        super().__init__(f"Template {template_id} not found")
        self.template_id = template_id


class HandlerInvocationFailure(SchedulerError):
    status_code = 502


class TimeoutExceeded(SchedulerError):
    status_code = 504


class ConcurrentModification(SchedulerError):
    status_code = 409
