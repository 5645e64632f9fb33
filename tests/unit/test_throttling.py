"""Unit tests for per-session rate-limit budgets."""

import pytest

from order_plane.broker.throttling import RateLimitBudget


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.mark.unit
class TestRateLimitBudget:
    """Token bucket behaviour."""

    def test_starts_full(self, clock):
        budget = RateLimitBudget(capacity=5, refill_per_second=1, clock=clock)
        assert budget.remaining == 5
        assert budget.headroom == 1.0

    def test_consume_until_exhausted(self, clock):
        budget = RateLimitBudget(capacity=3, refill_per_second=1, clock=clock)
        assert all(budget.try_consume() for _ in range(3))
        assert not budget.try_consume()
        assert budget.exhausted()

    def test_refill_over_time(self, clock):
        budget = RateLimitBudget(capacity=2, refill_per_second=4, clock=clock)
        budget.try_consume()
        budget.try_consume()
        clock.advance(0.25)
        assert budget.remaining == pytest.approx(1.0)
        assert budget.try_consume()

    def test_refill_capped_at_capacity(self, clock):
        budget = RateLimitBudget(capacity=2, refill_per_second=10, clock=clock)
        budget.try_consume()
        clock.advance(60)
        assert budget.remaining == 2

    def test_headroom(self, clock):
        budget = RateLimitBudget(capacity=4, refill_per_second=1, clock=clock)
        budget.try_consume()
        assert budget.headroom == pytest.approx(0.75)
