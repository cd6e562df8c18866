from services.rate_limiter import RateLimiter


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_one_execution_per_interval():
    clock = Clock()
    limiter = RateLimiter(rate=1, per_seconds=60, clock=clock)

    assert limiter.is_allowed("daily-nav") is True
    assert limiter.is_allowed("daily-nav") is False
    assert limiter.retry_after("daily-nav") == 60

    clock.now = 30
    assert limiter.is_allowed("daily-nav") is False
    assert limiter.retry_after("daily-nav") == 30

    clock.now = 60
    assert limiter.is_allowed("daily-nav") is True


def test_keys_are_independent():
    limiter = RateLimiter(rate=1, per_seconds=60, clock=Clock())
    assert limiter.is_allowed("daily-nav") is True
    assert limiter.is_allowed("market-indices") is True


def test_burst_up_to_rate():
    limiter = RateLimiter(rate=3, per_seconds=60, clock=Clock())
    assert [limiter.is_allowed("k") for _ in range(4)] == [True, True, True, False]


def test_idle_entries_are_cleaned_up():
    clock = Clock()
    limiter = RateLimiter(rate=1, per_seconds=60, cleanup_interval=300, clock=clock)
    limiter.is_allowed("old")

    clock.now = 4000
    limiter.is_allowed("new")

    assert "old" not in limiter.token_bucket
    assert "new" in limiter.token_bucket
