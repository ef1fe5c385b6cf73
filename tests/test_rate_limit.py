"""Unit tests for the sliding-window rate limiter."""

from commerce.core.rate_limit import SlidingWindowRateLimiter, rate_limit_key


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_key_layout():
    assert rate_limit_key("acme", "products.list", user_id="u1") == "acme:products.list:user:u1"
    assert rate_limit_key(None, "orders.list", client_ip="10.0.0.1") == (
        "no-tenant:orders.list:ip:10.0.0.1"
    )
    assert rate_limit_key(None, "x") == "no-tenant:x:ip:unknown"


def test_allows_up_to_limit_then_rejects():
    limiter = SlidingWindowRateLimiter(FakeClock())

    decisions = [limiter.hit("k", max_requests=3, window_seconds=60) for _ in range(4)]

    assert [d.allowed for d in decisions] == [True, True, True, False]
    assert [d.remaining for d in decisions] == [2, 1, 0, 0]
    assert decisions[-1].headers["X-RateLimit-Limit"] == "3"


def test_window_slides():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(clock)
    limiter.hit("k", 2, 10)
    clock.now += 6
    limiter.hit("k", 2, 10)
    assert not limiter.hit("k", 2, 10).allowed

    # The first hit leaves the window; only one slot frees up
    clock.now += 4.5
    assert limiter.hit("k", 2, 10).allowed
    assert not limiter.hit("k", 2, 10).allowed


def test_reset_seconds_counts_down_to_oldest_expiry():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(clock)
    limiter.hit("k", 1, 30)
    clock.now += 10
    decision = limiter.hit("k", 1, 30)
    assert not decision.allowed
    assert decision.reset_seconds == 20


def test_rejected_requests_do_not_extend_the_window():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(clock)
    limiter.hit("k", 1, 10)
    for _ in range(5):
        clock.now += 1
        limiter.hit("k", 1, 10)
    clock.now += 5
    assert limiter.hit("k", 1, 10).allowed


def test_keys_are_independent_and_reset_clears():
    limiter = SlidingWindowRateLimiter(FakeClock())
    limiter.hit("a", 1, 60)
    assert limiter.hit("b", 1, 60).allowed
    assert not limiter.hit("a", 1, 60).allowed

    limiter.reset()
    assert limiter.hit("a", 1, 60).allowed


def test_idle_keys_are_evicted():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(clock, sweep_interval=30)
    for i in range(50):
        limiter.hit(f"acme:products.list:ip:10.0.0.{i}", 5, 10)
    assert len(limiter) == 50

    clock.now += 31
    limiter.hit("acme:products.list:user:u1", 5, 10)

    assert len(limiter) == 1


def test_keys_inside_their_window_survive_a_sweep():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(clock, sweep_interval=5)
    limiter.hit("slow", 1, 60)
    limiter.hit("fast", 1, 2)

    clock.now += 6
    limiter.hit("other", 1, 60)

    assert len(limiter) == 2
    assert not limiter.hit("slow", 1, 60).allowed
