"""
Retry policies.

Maps a policy and an attempt number to the delay before the next try,
or None once the policy's tries are exhausted. Delays are in milliseconds.
"""

import random
from datetime import UTC, datetime, timedelta
from typing import Any, Literal

from pydantic import BaseModel, Field

# Upper bound for the random jitter added to linear/exponential delays
MAX_JITTER_MS = 100


class RetryPolicy(BaseModel):
    """
    Retry policy for failed queue items.

    - constant: every retry waits delay_ms
    - linear: delay_ms * attempt + jitter
    - exponential: delay_ms * attempt^2 + jitter
    """

    type: Literal["constant", "linear", "exponential"] = "exponential"
    delay_ms: int = Field(ge=0)
    max_delay_ms: int | None = Field(default=None, ge=0)
    tries: int = Field(ge=0)


DEFAULT_RETRY_POLICY = RetryPolicy(
    type="exponential",
    delay_ms=10_000,
    max_delay_ms=15 * 60_000,
    tries=5,
)


def next_run_delay(policy: RetryPolicy, attempt: int) -> int | None:
    """
    Compute the delay before the given attempt.

    Args:
        policy: The retry policy.
        attempt: 1-based number of the failed try being retried.

    Returns:
        Delay in milliseconds, or None when retries are exhausted.
    """
    if attempt > policy.tries:
        return None

    jitter = 0
    if attempt > 1:
        jitter = round(random.random() * min(MAX_JITTER_MS, policy.delay_ms))

    match policy.type:
        case "constant":
            delay = policy.delay_ms
        case "linear":
            delay = policy.delay_ms * attempt + jitter
        case "exponential":
            delay = policy.delay_ms * attempt**2 + jitter

    if policy.max_delay_ms is not None:
        delay = min(delay, policy.max_delay_ms)
    return delay


def next_run(
    policy: RetryPolicy,
    attempt: int,
    now: datetime | None = None,
) -> datetime | None:
    """Return the instant the next try becomes due, or None when exhausted."""
    delay = next_run_delay(policy, attempt)
    if delay is None:
        return None
    return (now or datetime.now(UTC)) + timedelta(milliseconds=delay)


def parse_policy(value: RetryPolicy | dict[str, Any] | None) -> RetryPolicy | None:
    """Load a policy stored as JSON."""
    if value is None or isinstance(value, RetryPolicy):
        return value
    return RetryPolicy.model_validate(value)


def resolve_retry_policy(
    item_policy: RetryPolicy | dict[str, Any] | None,
    queue_policy: RetryPolicy | dict[str, Any] | None = None,
) -> RetryPolicy:
    """Per-item policy wins over the queue's configured policy, then the default."""
    return parse_policy(item_policy) or parse_policy(queue_policy) or DEFAULT_RETRY_POLICY
