import pytest

from chatcart.rate_limiter import RateLimiter

from .conftest import FakeClock


def test_second_request_inside_interval_is_rejected():
    clock = FakeClock()
    limiter = RateLimiter(600, clock=clock)
    assert limiter.allow("s")
    clock.advance_ms(599)
    assert not limiter.allow("s")
    clock.advance_ms(1)
    assert limiter.allow("s")


def test_rejected_requests_do_not_extend_the_window():
    clock = FakeClock()
    limiter = RateLimiter(600, clock=clock)
    assert limiter.allow("s")
    clock.advance_ms(300)
    assert not limiter.allow("s")
    clock.advance_ms(300)
    assert limiter.allow("s")


def test_sessions_are_limited_independently():
    clock = FakeClock()
    limiter = RateLimiter(600, clock=clock)
    assert limiter.allow("a")
    assert limiter.allow("b")
    assert not limiter.allow("a")


def test_zero_interval_never_limits():
    limiter = RateLimiter(0, clock=FakeClock())
    assert limiter.allow("s")
    assert limiter.allow("s")


def test_negative_interval_is_rejected():
    with pytest.raises(ValueError):
        RateLimiter(-1)
