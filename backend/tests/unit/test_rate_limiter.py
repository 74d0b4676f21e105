import asyncio
import threading

import pytest

from lookup_meter.services.rate_limiter import SlidingWindowRateLimiter


def test_fourth_request_in_window_is_denied(rate_limiter, clock):
    decisions = []
    for _ in range(4):
        decisions.append(rate_limiter.admit("203.0.113.7"))
        clock.advance(1)

    assert [d.allowed for d in decisions] == [True, True, True, False]
    assert [d.remaining for d in decisions[:3]] == [2, 1, 0]
    # Oldest admitted at t=0, denied at t=3: 57 seconds until it leaves the window.
    assert decisions[3].retry_after_seconds == 57


def test_slot_frees_when_oldest_leaves_window(rate_limiter, clock):
    for _ in range(3):
        rate_limiter.admit("ip")
        clock.advance(10)

    assert rate_limiter.admit("ip").allowed is False
    clock.advance(30)  # first request (t=0) is now exactly 60s old
    assert rate_limiter.admit("ip").allowed is True
    assert rate_limiter.admit("ip").allowed is False


def test_denied_requests_do_not_extend_lockout(rate_limiter, clock):
    for _ in range(3):
        rate_limiter.admit("ip")
    for _ in range(10):
        clock.advance(5)
        assert rate_limiter.admit("ip").allowed is False

    clock.advance(10)  # t=60
    assert rate_limiter.admit("ip").allowed is True


def test_retry_after_is_at_least_one_second(clock):
    limiter = SlidingWindowRateLimiter(limit=1, window_seconds=60, clock=clock)
    limiter.admit("ip")
    clock.advance(59.5)

    assert limiter.admit("ip").retry_after_seconds == 1


def test_identities_are_independent(rate_limiter):
    for _ in range(3):
        rate_limiter.admit("a")

    assert rate_limiter.admit("a").allowed is False
    assert rate_limiter.admit("b").allowed is True


def test_status_does_not_count(rate_limiter):
    rate_limiter.admit("ip")

    for _ in range(5):
        status = rate_limiter.status("ip")

    assert status.count == 1
    assert status.remaining == 2
    assert rate_limiter.status("unknown").count == 0


def test_reset_clears_identity(rate_limiter):
    for _ in range(3):
        rate_limiter.admit("ip")

    assert rate_limiter.reset("ip") is True
    assert rate_limiter.admit("ip").allowed is True
    assert rate_limiter.reset("never-seen") is False


def test_sweep_reclaims_idle_identities(rate_limiter, clock):
    rate_limiter.admit("idle")
    clock.advance(30)
    rate_limiter.admit("active")
    clock.advance(40)

    assert rate_limiter.sweep() == 1
    assert len(rate_limiter) == 1


def test_concurrent_admits_never_exceed_limit():
    limiter = SlidingWindowRateLimiter(limit=5, window_seconds=60)
    barrier = threading.Barrier(20)
    results = []

    def worker():
        barrier.wait()
        results.append(limiter.admit("shared").allowed)

    threads = [threading.Thread(target=worker) for _ in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 5


@pytest.mark.parametrize("limit,window", [(0, 60), (3, 0)])
def test_rejects_bad_configuration(limit, window):
    with pytest.raises(ValueError):
        SlidingWindowRateLimiter(limit=limit, window_seconds=window)


async def test_background_sweeper_lifecycle(clock):
    limiter = SlidingWindowRateLimiter(limit=3, window_seconds=60, clock=clock)
    limiter.admit("ip")
    clock.advance(120)

    limiter.start(interval_seconds=0.01)
    await asyncio.sleep(0.05)
    await limiter.stop()

    assert len(limiter) == 0
