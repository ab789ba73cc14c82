"""Retry logic with exponential backoff and jitter.

This module provides:
- backoff_delay: Delay for a given attempt, capped, with +/- jitter
- backoff_delays: Iterator over successive, non-decreasing delays
- retry_with_backoff: Await a coroutine factory until it succeeds
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Iterator
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_JITTER = 0.3
DEFAULT_BACKOFF_MULTIPLIER = 2.0

Sleep = Callable[[float], Awaitable[None]]


def backoff_delay(
    attempt: int,
    base: float,
    cap: float,
    jitter: float = DEFAULT_JITTER,
    rng: random.Random | None = None,
    floor: float = 0.0,
) -> float:
    """Compute the delay before retry number ``attempt`` (0-based).

    The exponential value ``min(cap, base * 2**attempt)`` is perturbed by a
    random fraction in ``[-jitter, +jitter]`` so clients do not retry in
    lockstep. The result is never below ``floor``; passing the previous
    delay keeps a jittered sequence from shrinking once it reaches the cap.

    Args:
        attempt: Number of attempts already made.
        base: Delay for attempt 0, in seconds.
        cap: Maximum exponential value, in seconds.
        jitter: Maximum relative perturbation (0.3 = 30%).
        rng: Random source (module-level random when None).
        floor: Lower bound, usually the previously used delay.

    Returns:
        Delay in seconds.
    """
    rng = rng or random
    exp_backoff = min(cap, base * DEFAULT_BACKOFF_MULTIPLIER**attempt)
    delay = exp_backoff + exp_backoff * jitter * rng.uniform(-1.0, 1.0)
    return max(floor, delay)


def backoff_delays(
    base: float,
    cap: float,
    jitter: float = DEFAULT_JITTER,
    rng: random.Random | None = None,
) -> Iterator[float]:
    """Yield ``backoff_delay(0)``, ``backoff_delay(1)``, ... indefinitely.

    Each delay is floored at the previous one, so the sequence never
    decreases.
    """
    attempt = 0
    previous = 0.0
    while True:
        previous = backoff_delay(attempt, base, cap, jitter, rng, floor=previous)
        yield previous
        attempt += 1


async def retry_with_backoff(
    func: Callable[[], Awaitable[T]],
    max_attempts: int,
    initial_delay: float,
    max_delay: float,
    jitter: float = DEFAULT_JITTER,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
    sleep: Sleep = asyncio.sleep,
    rng: random.Random | None = None,
) -> T:
    """Await ``func()`` with exponential backoff between failed attempts.

    Args:
        func: Coroutine factory, called once per attempt.
        max_attempts: Total number of attempts (not retries).
        initial_delay: Delay after the first failure.
        max_delay: Cap on the exponential delay.
        jitter: Relative jitter applied to each delay.
        retryable_exceptions: Exception types that trigger another attempt.
        sleep: Awaitable sleep (injectable for tests).
        rng: Random source for jitter.

    Returns:
        Result of the first successful attempt.

    Raises:
        The last exception if every attempt fails.
    """
    delay = 0.0
    for attempt in range(max_attempts):
        try:
            return await func()
        except retryable_exceptions as e:
            if attempt + 1 >= max_attempts:
                logger.error(f"All {max_attempts} attempts failed: {e}")
                raise

            delay = backoff_delay(
                attempt, initial_delay, max_delay, jitter, rng, floor=delay
            )
            logger.warning(
                f"Attempt {attempt + 1}/{max_attempts} failed: {e}. "
                f"Retrying in {delay:.1f}s..."
            )
            await sleep(delay)

    raise RuntimeError("retry_with_backoff called with max_attempts < 1")
