from __future__ import annotations

import pytest

from parascribe.scheduler import PacingPolicy, RateLimitedScheduler, RateLimits, RetryPolicy, SchedulerBudget

NO_PACING = PacingPolicy(initial_delay_sec=0.0, min_delay_sec=0.0, max_delay_sec=0.0)
FAST_RETRY = RetryPolicy(
    rate_limit_base_sec=0.01,
    rate_limit_cap_sec=1.0,
    transient_step_sec=0.01,
    jitter_sec=0.005,
)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_scheduler():
    created: list[RateLimitedScheduler] = []

    def _make(limits: RateLimits | None = None, *, workers: int = 3, provider: str = "openai", **kwargs):
        budget = SchedulerBudget(limits or RateLimits(), NO_PACING)
        kwargs.setdefault("retry_policy", FAST_RETRY)
        scheduler = RateLimitedScheduler({provider: budget}, workers_per_provider=workers, **kwargs)
        created.append(scheduler)
        return scheduler

    yield _make

    for scheduler in created:
        scheduler.shutdown()
