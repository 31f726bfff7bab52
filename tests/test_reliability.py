"""
Tests for reliability — bounded polling.
"""

import pytest

from stackdeploy.core.errors import OperationTimeoutError, ProviderActionError
from stackdeploy.core.reliability.poll import PollPolicy, wait_until


class FakeClock:
    """Monotonic clock advanced only by the fake sleep."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


# ── Policy ───────────────────────────────────────────────────────────


class TestPollPolicy:
    def test_exponential_backoff(self):
        policy = PollPolicy(interval=1.0, backoff=2.0, max_interval=30.0, jitter=0.0)
        assert [policy.delay(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_capped(self):
        policy = PollPolicy(interval=10.0, backoff=3.0, max_interval=20.0, jitter=0.0)
        assert policy.delay(5) == 20.0

    def test_jitter_bounded(self):
        policy = PollPolicy(interval=4.0, jitter=0.5)
        for _ in range(50):
            assert 4.0 <= policy.delay(1) <= 6.0


# ── wait_until ──────────────────────────────────────────────────────


class TestWaitUntil:
    def test_immediate(self):
        clock = FakeClock()
        assert wait_until(lambda: "ready", sleep=clock.sleep, clock=clock) == "ready"
        assert clock.sleeps == []

    def test_returns_first_truthy_value(self):
        clock = FakeClock()
        answers = iter([None, "", {"status": "ACTIVE"}])

        result = wait_until(
            lambda: next(answers),
            policy=PollPolicy(interval=1.0, jitter=0.0),
            sleep=clock.sleep,
            clock=clock,
        )

        assert result == {"status": "ACTIVE"}
        assert clock.sleeps == [1.0, 2.0]

    def test_times_out(self):
        clock = FakeClock()
        calls = []

        with pytest.raises(OperationTimeoutError, match="lock table to become ACTIVE"):
            wait_until(
                lambda: calls.append(1),
                policy=PollPolicy(timeout=10.0, interval=1.0, jitter=0.0),
                description="lock table to become ACTIVE",
                sleep=clock.sleep,
                clock=clock,
            )

        assert clock.now == 10.0
        assert sum(clock.sleeps) == 10.0
        assert len(calls) == len(clock.sleeps) + 1

    def test_last_sleep_trimmed_to_deadline(self):
        clock = FakeClock()
        with pytest.raises(OperationTimeoutError):
            wait_until(
                lambda: False,
                policy=PollPolicy(timeout=5.0, interval=4.0, jitter=0.0),
                sleep=clock.sleep,
                clock=clock,
            )
        assert clock.sleeps == [4.0, 1.0]

    def test_zero_timeout_checks_once(self):
        calls = []
        with pytest.raises(OperationTimeoutError):
            wait_until(lambda: calls.append(1), policy=PollPolicy(timeout=0.0))
        assert len(calls) == 1

    def test_timeout_is_a_provider_error(self):
        with pytest.raises(ProviderActionError):
            wait_until(lambda: False, policy=PollPolicy(timeout=0.0))
