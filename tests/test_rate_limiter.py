from captionrelay.streaming.rate_limiter import ConnectionGate, RateLimiter


class _Clock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_rate_limiter_allows_until_max_then_denies():
    clock = _Clock()
    limiter = RateLimiter(window_sec=60.0, max_requests=3, clock=clock)
    assert [limiter.is_allowed("1.2.3.4") for _ in range(4)] == [True, True, True, False]


def test_rate_limiter_allows_again_after_window():
    clock = _Clock()
    limiter = RateLimiter(window_sec=60.0, max_requests=3, clock=clock)
    for _ in range(3):
        limiter.is_allowed("1.2.3.4")
    assert limiter.is_allowed("1.2.3.4") is False

    clock.now += 60.0
    assert limiter.is_allowed("1.2.3.4") is True
    assert limiter.remaining("1.2.3.4") == 2


def test_rate_limiter_keys_are_independent():
    limiter = RateLimiter(window_sec=60.0, max_requests=1, clock=_Clock())
    assert limiter.is_allowed("a") is True
    assert limiter.is_allowed("a") is False
    assert limiter.is_allowed("b") is True


def test_remaining_never_negative():
    clock = _Clock()
    limiter = RateLimiter(window_sec=60.0, max_requests=2, clock=clock)
    assert limiter.remaining("x") == 2
    for _ in range(5):
        limiter.is_allowed("x")
        assert limiter.remaining("x") >= 0
    assert limiter.get_remaining_requests("x") == 0

    clock.now += 61.0
    assert limiter.remaining("x") == 2


def test_reset_removes_record():
    limiter = RateLimiter(window_sec=60.0, max_requests=1, clock=_Clock())
    limiter.is_allowed("x")
    assert limiter.is_allowed("x") is False
    limiter.reset("x")
    assert limiter.is_allowed("x") is True
    limiter.reset("missing")


def test_cleanup_only_removes_expired_records():
    clock = _Clock()
    limiter = RateLimiter(window_sec=10.0, max_requests=5, clock=clock)
    limiter.is_allowed("old")
    clock.now += 6.0
    limiter.is_allowed("new")
    clock.now += 5.0

    assert limiter.cleanup() == 1
    assert len(limiter) == 1
    assert limiter.remaining("new") == 4


def test_connection_gate_ceiling_and_decrement():
    gate = ConnectionGate(max_connections=2)
    assert gate.check_connection_allowed("ip") is True
    gate.increment("ip")
    gate.increment("ip")
    assert gate.check_connection_allowed("ip") is False

    assert gate.decrement("ip") == 1
    assert gate.check_connection_allowed("ip") is True
    assert gate.decrement("ip") == 0
    assert gate.count("ip") == 0


def test_connection_gate_decrement_never_goes_negative():
    gate = ConnectionGate(max_connections=1)
    assert gate.decrement("ip") == 0
    assert gate.count("ip") == 0
    gate.increment("ip")
    assert gate.count("ip") == 1
