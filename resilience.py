"""Shared resilience utilities: retry policy, backoff and bounded polling."""

from __future__ import annotations

import asyncio
import os
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)


# --- Helper functions to read environment overrides ---
def _env_int(name: str, default: int) -> int:
    try:
        value = os.getenv(name)
        if value not in (None, ""):
            return max(1, int(value))
    except Exception:
        pass
    return default


def _env_float(name: str, default: float) -> float:
    try:
        value = os.getenv(name)
        if value not in (None, ""):
            return max(0.0, float(value))
    except Exception:
        pass
    return default


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_base: float = 0.25
    backoff_cap: float = 8.0
    jitter: float = 0.5
    # Overall budget for polling loops (seconds). Not used by run_with_retry.
    timeout_seconds: float = 300.0


# One extra attempt per index with a short fixed delay between attempts.
DEFAULT_INDEX_RETRY_POLICY = RetryPolicy(
    max_attempts=_env_int("REBUILD_MAX_ATTEMPTS", 2),
    backoff_base=_env_float("REBUILD_RETRY_DELAY_SECONDS", 5.0),
    backoff_cap=_env_float("REBUILD_RETRY_DELAY_SECONDS", 5.0),
    jitter=0.0,
)

# Index build readiness: 2s, 4s, 8s, 16s, 20s, ... for at most 10 minutes.
DEFAULT_INDEX_READY_POLICY = RetryPolicy(
    max_attempts=1,
    backoff_base=_env_float("INDEX_READY_POLL_BASE_SECONDS", 2.0),
    backoff_cap=_env_float("INDEX_READY_POLL_MAX_SECONDS", 20.0),
    jitter=0.0,
    timeout_seconds=_env_float("INDEX_READY_TIMEOUT_SECONDS", 600.0),
)

# autoCompact job monitoring: starts at 5s, capped at 20s, 5 minute budget.
DEFAULT_AUTOCOMPACT_POLL_POLICY = RetryPolicy(
    max_attempts=1,
    backoff_base=_env_float("AUTOCOMPACT_POLL_BASE_SECONDS", 5.0),
    backoff_cap=_env_float("AUTOCOMPACT_POLL_MAX_SECONDS", 20.0),
    jitter=0.0,
    timeout_seconds=_env_float("AUTOCOMPACT_POLL_TIMEOUT_SECONDS", 300.0),
)

# Topology settlement after replSetStepDown.
DEFAULT_STEPDOWN_SETTLE_POLICY = RetryPolicy(
    max_attempts=1,
    backoff_base=2.0,
    backoff_cap=10.0,
    jitter=0.0,
    timeout_seconds=_env_float("STEPDOWN_SETTLE_TIMEOUT_SECONDS", 60.0),
)


def compute_backoff_delay(attempt: int, policy: RetryPolicy) -> float:
    attempt_index = max(1, int(attempt))
    exponential = policy.backoff_base * (2 ** (attempt_index - 1))
    capped = min(policy.backoff_cap, exponential)
    jitter = random.random() * policy.jitter if policy.jitter > 0 else 0.0
    delay = max(0.0, capped + jitter)
    return delay


def _policy_wait(policy: RetryPolicy):
    wait = wait_exponential(multiplier=policy.backoff_base, max=policy.backoff_cap)
    if policy.jitter > 0:
        wait = wait + wait_random(0, policy.jitter)
    return wait


async def run_with_retry(
    operation: Callable[[int], Awaitable[Any]],
    policy: RetryPolicy,
    *,
    before_retry: Optional[Callable[[int], Awaitable[None]]] = None,
    is_retryable: Optional[Callable[[BaseException], bool]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    logger: Any = None,
    context: Optional[Dict[str, Any]] = None,
) -> Any:
    """Run ``operation(attempt_number)`` under ``policy``.

    ``before_retry(attempt_number)`` runs before every attempt after the first,
    inside that attempt. Exceptions rejected by ``is_retryable`` propagate
    immediately; once attempts are exhausted the last exception is re-raised.
    """

    def _before_sleep(retry_state) -> None:
        outcome = retry_state.outcome
        error = outcome.exception() if outcome is not None else None
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        if logger is None:
            return
        logger.warning(
            "retry_scheduled",
            attempt=retry_state.attempt_number,
            max_attempts=policy.max_attempts,
            delay_seconds=round(float(delay), 2),
            error=str(error),
            **(context or {}),
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, int(policy.max_attempts))),
        wait=_policy_wait(policy),
        retry=retry_if_exception(is_retryable or (lambda _exc: True)),
        sleep=sleep,
        before_sleep=_before_sleep,
        reraise=True,
    )

    result: Any = None
    async for attempt in retrying:
        with attempt:
            number = attempt.retry_state.attempt_number
            if number > 1 and before_retry is not None:
                await before_retry(number)
            result = await operation(number)
    return result


async def poll_until(
    check: Callable[[], Awaitable[bool]],
    policy: RetryPolicy,
    *,
    wait_first: bool = False,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Poll ``check`` with exponential backoff until it returns True.

    Returns False once ``policy.timeout_seconds`` is spent ("not yet"); it never
    raises on timeout. With ``wait_first`` the first check happens after one delay.
    """
    deadline = clock() + max(0.0, float(policy.timeout_seconds))
    attempt = 0
    if wait_first:
        attempt += 1
        await sleep(min(compute_backoff_delay(attempt, policy), max(0.0, deadline - clock())))
    while True:
        if await check():
            return True
        remaining = deadline - clock()
        if remaining <= 0:
            return False
        attempt += 1
        await sleep(min(compute_backoff_delay(attempt, policy), remaining))
