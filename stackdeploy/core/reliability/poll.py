"""
Bounded poll — wait for a condition with exponential backoff and a hard timeout.

Provider adapters use this for slow convergence (an edge distribution
propagating, a certificate validating, a lock table becoming ACTIVE).
The wait is always bounded: when the deadline passes the caller gets
an OperationTimeoutError instead of a hang.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from stackdeploy.core.errors import OperationTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class PollPolicy:
    """How long and how often to poll.

    Args:
        timeout: Hard deadline in seconds.
        interval: First delay between attempts.
        max_interval: Upper bound for a single delay.
        backoff: Multiplier applied after each attempt.
        jitter: Fraction of the delay added as random jitter.
    """

    timeout: float = 300.0
    interval: float = 2.0
    max_interval: float = 30.0
    backoff: float = 2.0
    jitter: float = 0.1

    def delay(self, attempt: int) -> float:
        """Delay before the given (1-based) retry attempt."""
        base = min(self.interval * (self.backoff ** (attempt - 1)), self.max_interval)
        return base + random.uniform(0, base * self.jitter)


def wait_until(
    predicate: Callable[[], T],
    *,
    policy: PollPolicy | None = None,
    description: str = "condition",
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """Call ``predicate`` until it returns a truthy value.

    Args:
        predicate: Zero-arg callable; a truthy result ends the wait.
        policy: Timeout and backoff settings.
        description: Used in log lines and the timeout message.
        sleep: Injectable sleep (tests).
        clock: Injectable monotonic clock (tests).

    Returns:
        The first truthy value returned by ``predicate``.

    Raises:
        OperationTimeoutError: If the deadline passes first.
    """
    policy = policy or PollPolicy()
    deadline = clock() + policy.timeout
    attempt = 0

    while True:
        attempt += 1
        result = predicate()
        if result:
            if attempt > 1:
                logger.debug("%s satisfied after %d attempts", description, attempt)
            return result

        remaining = deadline - clock()
        if remaining <= 0:
            raise OperationTimeoutError(
                f"timed out after {policy.timeout:g}s waiting for {description}"
            )

        delay = min(policy.delay(attempt), remaining)
        logger.debug(
            "Waiting for %s: attempt %d, next check in %.1fs",
            description, attempt, delay,
        )
        sleep(delay)
