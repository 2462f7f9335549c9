import asyncio

import pytest

from fourbyte.rate_limiter import RateLimiter


def test_allows_up_to_max_then_denies(clock) -> None:
    limiter = RateLimiter(10, 10_000, clock=clock)

    results = [limiter.check("conn") for _ in range(10)]
    assert all(result.allowed for result in results)
    assert [result.remaining for result in results] == list(range(9, -1, -1))

    clock.advance(2_500)
    denied = limiter.check("conn")
    assert denied.allowed is False
    assert denied.remaining == 0
    assert denied.reset_in == 7_500


def test_window_resets_after_window_ms(clock) -> None:
    limiter = RateLimiter(2, 1_000, clock=clock)
    limiter.check("conn")
    limiter.check("conn")
    assert limiter.check("conn").allowed is False

    clock.advance(1_000)
    result = limiter.check("conn")
    assert result.allowed is True
    assert result.remaining == 1
    assert result.reset_in == 1_000


def test_denied_calls_do_not_extend_window(clock) -> None:
    limiter = RateLimiter(1, 1_000, clock=clock)
    limiter.check("conn")
    for _ in range(5):
        clock.advance(100)
        assert limiter.check("conn").allowed is False

    clock.advance(500)
    assert limiter.check("conn").allowed is True


def test_identifiers_are_independent(clock) -> None:
    limiter = RateLimiter(1, 1_000, clock=clock)
    assert limiter.check("a").allowed is True
    assert limiter.check("a").allowed is False
    assert limiter.check("b").allowed is True


def test_remove_forgets_identifier(clock) -> None:
    limiter = RateLimiter(1, 1_000, clock=clock)
    limiter.check("conn")
    limiter.remove("conn")
    limiter.remove("missing")

    assert len(limiter) == 0
    assert limiter.check("conn").allowed is True


def test_cleanup_purges_only_stale_entries(clock) -> None:
    limiter = RateLimiter(5, 1_000, clock=clock)
    limiter.check("old")
    clock.advance(1_500)
    limiter.check("fresh")

    clock.advance(600)
    assert limiter.cleanup() == 1
    assert limiter.get_stats() == {"trackedClients": 1, "maxRequests": 5, "windowMs": 1_000}


@pytest.mark.asyncio
async def test_background_sweep_runs_and_stops(clock) -> None:
    limiter = RateLimiter(5, 10, clock=clock, sweep_interval_ms=5)
    limiter.check("conn")
    clock.advance(100)

    limiter.start()
    for _ in range(50):
        if len(limiter) == 0:
            break
        await asyncio.sleep(0.01)
    await limiter.stop()

    assert len(limiter) == 0
    await limiter.stop()
