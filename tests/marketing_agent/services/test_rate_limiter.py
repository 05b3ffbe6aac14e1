import pytest

from marketing_agent.errors import RateLimited
from marketing_agent.services.rate_limiter import SlidingWindowRateLimiter


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def test_allows_up_to_limit_then_blocks():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(max_requests=5, window_seconds=60, clock=clock)

    for second in range(5):
        clock.now = float(second)
        limiter.check("org-1")

    clock.now = 10.0
    with pytest.raises(RateLimited) as exc:
        limiter.check("org-1")
    assert exc.value.retry_after == pytest.approx(50.0)


def test_window_slides():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(max_requests=2, window_seconds=60, clock=clock)
    limiter.check("org-1")
    clock.now = 30.0
    limiter.check("org-1")

    clock.now = 60.0
    limiter.check("org-1")
    assert limiter.remaining("org-1") == 0

    clock.now = 90.0
    assert limiter.remaining("org-1") == 1


def test_keys_are_independent():
    limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=60, clock=FakeClock())
    limiter.check("org-1")
    limiter.check("org-2")

    with pytest.raises(RateLimited):
        limiter.check("org-1")

    limiter.reset("org-1")
    limiter.check("org-1")


def test_idle_keys_are_forgotten():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(max_requests=2, window_seconds=60, clock=clock)

    assert limiter.remaining("never-seen") == 2
    assert limiter._hits == {}

    limiter.check("org-1")
    limiter.check("org-2")
    clock.now = 61.0

    # A request from one organization sweeps the expired ones
    limiter.check("org-3")
    assert set(limiter._hits) == {"org-3"}

    clock.now = 200.0
    assert limiter.remaining("org-3") == 2
    assert limiter._hits == {}


def test_prune_reports_dropped_keys():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=10, clock=clock)
    for key in ("a", "b", "c"):
        limiter.check(key)

    clock.now = 5.0
    assert limiter.prune() == 0
    clock.now = 10.0
    assert limiter.prune() == 3
