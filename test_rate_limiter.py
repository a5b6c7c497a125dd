import pytest
from rate_limiter import FixedWindowRateLimiter


class FakeClock:
    def __init__(self, start=500_000.0):
        self.now = start

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return FixedWindowRateLimiter(max_requests=3, window_seconds=3600, clock=clock)


def test_limit_th_request_allowed(limiter):
    """The first three requests in a window are allowed"""
    for _ in range(3):
        allowed, retry_after = limiter.hit("1.2.3.4")
        assert allowed
        assert retry_after == 0


def test_request_over_limit_denied(limiter, clock):
    """The fourth request is denied with the time left in the window"""
    for _ in range(3):
        limiter.hit("1.2.3.4")
    clock.now += 600

    allowed, retry_after = limiter.hit("1.2.3.4")

    assert not allowed
    assert retry_after == 3000


def test_ips_are_independent(limiter):
    for _ in range(3):
        limiter.hit("1.2.3.4")
    assert not limiter.hit("1.2.3.4")[0]
    assert limiter.hit("5.6.7.8")[0]


def test_window_resets(limiter, clock):
    for _ in range(4):
        limiter.hit("1.2.3.4")
    clock.now += 3600
    assert limiter.hit("1.2.3.4") == (True, 0)


def test_expired_windows_are_pruned(limiter, clock):
    limiter.hit("1.2.3.4")
    limiter.hit("5.6.7.8")
    clock.now += 7200
    limiter.hit("9.9.9.9")
    assert limiter.stats()["active_windows"] == 1


def test_reset(limiter):
    for _ in range(4):
        limiter.hit("1.2.3.4")
    limiter.reset()
    assert limiter.hit("1.2.3.4")[0]
