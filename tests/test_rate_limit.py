"""Tests for the per-owner sliding-window limiter."""

from rememory.api.rate_limit import SlidingWindowLimiter


def test_allows_up_to_max_in_window():
    limiter = SlidingWindowLimiter(max_requests=3, window_seconds=60)
    assert [limiter.allow("owner-1", now=t) for t in (0, 1, 2, 3)] == [True, True, True, False]


def test_window_slides():
    limiter = SlidingWindowLimiter(max_requests=2, window_seconds=60)
    assert limiter.allow("owner-1", now=0)
    assert limiter.allow("owner-1", now=30)
    assert not limiter.allow("owner-1", now=59)
    assert limiter.allow("owner-1", now=60.5)


def test_owners_are_independent():
    limiter = SlidingWindowLimiter(max_requests=1, window_seconds=60)
    assert limiter.allow("owner-1", now=0)
    assert limiter.allow("owner-2", now=0)
    assert not limiter.allow("owner-1", now=1)


def test_idle_owners_are_dropped():
    limiter = SlidingWindowLimiter(max_requests=5, window_seconds=60)
    for i in range(100):
        limiter.allow(f"owner-{i}", now=0)
    assert len(limiter._hits) == 100

    limiter.allow("late-owner", now=120)

    assert list(limiter._hits) == ["late-owner"]
