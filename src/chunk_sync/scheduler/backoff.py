"""Category-specific retry policy for failed chunks."""

from __future__ import annotations

from dataclasses import dataclass

from chunk_sync.scheduler.models import ErrorCategory

DEFAULT_MAX_ATTEMPTS = 3

_NEVER_RETRY: frozenset[ErrorCategory] = frozenset(
    {
        ErrorCategory.PERMISSION,
        ErrorCategory.NOT_FOUND,
        ErrorCategory.CONFLICT,
    },
)
# Upper bound on retries beyond the first attempt, independent of max_attempts.
_EXTRA_ATTEMPT_CEILING: dict[ErrorCategory, int] = {
    ErrorCategory.RATE_LIMIT: 2,
    ErrorCategory.AUTH: 1,
}


@dataclass(slots=True, frozen=True)
class RetryDecision:
    """Whether a failed chunk goes back to pending, and after how long."""

    retryable: bool
    delay_ms: int
    reason: str


def retry_delay_ms(category: ErrorCategory, attempt: int) -> int:
    """Delay before retry number ``attempt`` (1-based) for the given category."""

    attempt = max(1, attempt)
    if category is ErrorCategory.RATE_LIMIT:
        return 5000 * 3 ** min(attempt - 1, 2)
    if category in {ErrorCategory.NETWORK, ErrorCategory.TRANSIENT_SERVER}:
        return 2000 * 2 ** min(attempt - 1, 2)
    if category is ErrorCategory.TIMEOUT:
        return 3000 * min(attempt, 3)
    if category is ErrorCategory.AUTH:
        return 2000 if attempt == 1 else 5000
    if category in _NEVER_RETRY:
        return 0
    return 1000 * 2 ** min(attempt - 1, 2)


def next_action(
    category: ErrorCategory,
    *,
    attempt: int,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> RetryDecision:
    """Decide what happens after a failed attempt.

    ``attempt`` is the number of the retry that would occur next, which equals the
    number of attempts already consumed by the chunk.
    """

    if category in _NEVER_RETRY:
        return RetryDecision(retryable=False, delay_ms=0, reason=f"{category.value}_not_retryable")

    ceiling = _EXTRA_ATTEMPT_CEILING.get(category)
    if ceiling is not None and attempt > ceiling:
        return RetryDecision(
            retryable=False,
            delay_ms=0,
            reason=f"{category.value}_retry_ceiling_reached",
        )
    if attempt >= max_attempts:
        return RetryDecision(retryable=False, delay_ms=0, reason="max_attempts_exhausted")

    return RetryDecision(
        retryable=True,
        delay_ms=retry_delay_ms(category, attempt),
        reason=f"{category.value}_retry",
    )
