import logging
from datetime import datetime, timedelta, timezone, tzinfo
from typing import List, Optional

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from neon_scheduler.core.errors import InvalidCronExpression, InvalidTimezone

logger = logging.getLogger(__name__)

# Upper bound on candidates skipped for DST gaps/overlaps before giving up
_MAX_CANDIDATES = 1000

_KNOWN_DESCRIPTIONS = {
    "* * * * *": "Every minute",
    "*/5 * * * *": "Every 5 minutes",
    "*/15 * * * *": "Every 15 minutes",
    "*/30 * * * *": "Every 30 minutes",
    "0 * * * *": "Every hour",
    "0 */2 * * *": "Every 2 hours",
    "0 */6 * * *": "Every 6 hours",
    "0 */12 * * *": "Every 12 hours",
    "0 0,12 * * *": "Twice daily at midnight and noon",
    "0 0 * * *": "Daily at midnight",
    "0 9 * * *": "Daily at 9:00 AM",
    "0 18 * * *": "Daily at 6:00 PM",
    "0 0 * * 1": "Weekly on Monday",
    "0 0 1 * *": "Monthly on the 1st",
    "0 9-17 * * 1-5": "Hourly during business hours (Mon-Fri)",
}


def resolve_timezone(timezone_name: str) -> tzinfo:
    if not timezone_name:
        raise InvalidTimezone("Timezone must not be empty")
    try:
        return ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidTimezone(f"Unknown timezone: {timezone_name}") from exc


def _build_iterator(cron_expression: str, start: datetime) -> croniter:
    fields = cron_expression.split() if cron_expression else []
    if len(fields) not in (5, 6):
        raise InvalidCronExpression(
            f"Invalid cron expression '{cron_expression}': expected 5 or 6 fields, got {len(fields)}"
        )
    try:
        # 6-field expressions carry a leading seconds field
        return croniter(" ".join(fields), start, second_at_beginning=len(fields) == 6)
    except (ValueError, KeyError, TypeError) as exc:
        raise InvalidCronExpression(f"Invalid cron expression '{cron_expression}': {exc}") from exc


def validate_cron(cron_expression: str) -> None:
    _build_iterator(cron_expression, datetime(2000, 1, 1))


def validate_timezone(timezone_name: str) -> None:
    resolve_timezone(timezone_name)


def _is_nonexistent(local: datetime, tz: tzinfo) -> bool:
    aware = local.replace(tzinfo=tz)
    round_trip = aware.astimezone(timezone.utc).astimezone(tz).replace(tzinfo=None)
    return round_trip != local


def compute_next_run(cron_expression: str, timezone_name: str, after: datetime) -> datetime:
    """Return the first UTC instant strictly after ``after`` matching the cron.

    Fields are matched against wall-clock time in ``timezone_name``. Wall-clock
    times that fall in a spring-forward gap are skipped; times repeated by a
    fall-back transition fire once, on their first occurrence.
    """
    tz = resolve_timezone(timezone_name)
    if after.tzinfo is None:
        after = after.replace(tzinfo=timezone.utc)

    local_after = after.astimezone(tz).replace(tzinfo=None)
    itr = _build_iterator(cron_expression, local_after)

    for _ in range(_MAX_CANDIDATES):
        try:
            candidate = itr.get_next(datetime)
        except (ValueError, KeyError) as exc:
            raise InvalidCronExpression(
                f"Cron expression '{cron_expression}' never fires: {exc}"
            ) from exc
        if _is_nonexistent(candidate, tz):
            logger.debug("Skipping nonexistent local time %s in %s", candidate, timezone_name)
            continue
        next_utc = candidate.replace(tzinfo=tz).astimezone(timezone.utc)
        if next_utc > after:
            return next_utc

    raise InvalidCronExpression(f"Cron expression '{cron_expression}' has no upcoming occurrence")


def get_next_executions(
    cron_expression: str,
    timezone_name: str,
    count: int = 5,
    after: Optional[datetime] = None,
) -> List[datetime]:
    current = after or datetime.now(timezone.utc)
    runs: List[datetime] = []
    for _ in range(count):
        current = compute_next_run(cron_expression, timezone_name, current)
        runs.append(current)
    return runs


def describe_cron(cron_expression: str) -> str:
    normalized = " ".join(cron_expression.split())
    return _KNOWN_DESCRIPTIONS.get(normalized, "Custom schedule")


def format_utc_offset(timezone_name: str, at: Optional[datetime] = None) -> str:
    tz = resolve_timezone(timezone_name)
    offset = (at or datetime.now(timezone.utc)).astimezone(tz).utcoffset() or timedelta(0)
    total_minutes = int(offset.total_seconds() // 60)
    sign = "+" if total_minutes >= 0 else "-"
    hours, minutes = divmod(abs(total_minutes), 60)
    return f"{sign}{hours:02d}:{minutes:02d}"
