from typing import Optional

from neon_scheduler.schemas.scheduler import RetryConfig


def next_retry_delay(attempt: int, config: RetryConfig) -> Optional[int]:
    """Delay in milliseconds before retry number ``attempt`` (0-based).

    Returns None once ``attempt`` reaches ``max_retries``: the sequence is
    exhausted and the failure is terminal.
    """
    if attempt >= config.max_retries:
        return None

    delay = config.retry_delay_ms * (config.backoff_multiplier ** max(attempt, 0))
    return int(min(delay, config.max_retry_delay_ms))
