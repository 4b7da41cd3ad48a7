from datetime import datetime, timedelta, timezone

from household_budget.rate_limit import MemoryAttemptStore, RateLimiter


class FakeClock:
    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def make_limiter():
    clock = FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))
    store = MemoryAttemptStore()
    return RateLimiter(store, clock=clock), store, clock


def test_unknown_ip_is_allowed_with_full_attempts():
    limiter, _, _ = make_limiter()

    result = limiter.check_rate_limit("10.0.0.1")

    assert result.allowed is True
    assert result.remaining_attempts == 3
    assert result.lockout_ends_at is None


def test_failures_count_down_then_lock_out():
    limiter, store, clock = make_limiter()

    limiter.record_failed_attempt("10.0.0.1")
    assert limiter.check_rate_limit("10.0.0.1").remaining_attempts == 2
    limiter.record_failed_attempt("10.0.0.1")
    assert limiter.check_rate_limit("10.0.0.1").remaining_attempts == 1

    third = limiter.record_failed_attempt("10.0.0.1")
    assert third.allowed is False
    assert store.records["10.0.0.1"]["lockout_until"] == clock.now + timedelta(minutes=5)

    locked = limiter.check_rate_limit("10.0.0.1")
    assert locked.allowed is False
    assert locked.remaining_attempts == 0
    assert locked.lockout_ends_at == clock.now + timedelta(minutes=5)


def test_lockout_expires_after_five_minutes_and_clears_record():
    limiter, store, clock = make_limiter()
    for _ in range(3):
        limiter.record_failed_attempt("10.0.0.1")

    clock.advance(minutes=4, seconds=59)
    assert limiter.check_rate_limit("10.0.0.1").allowed is False

    clock.advance(seconds=1)
    result = limiter.check_rate_limit("10.0.0.1")
    assert result.allowed is True
    assert result.remaining_attempts == 3
    assert "10.0.0.1" not in store.records


def test_clear_rate_limit_resets_counter():
    limiter, store, _ = make_limiter()
    limiter.record_failed_attempt("10.0.0.1")

    limiter.clear_rate_limit("10.0.0.1")

    assert store.records == {}
    assert limiter.check_rate_limit("10.0.0.1").remaining_attempts == 3


def test_attempts_are_tracked_per_ip():
    limiter, _, _ = make_limiter()
    for _ in range(3):
        limiter.record_failed_attempt("10.0.0.1")

    assert limiter.check_rate_limit("10.0.0.2").allowed is True


def test_result_serializes_lockout_time():
    limiter, _, clock = make_limiter()
    for _ in range(3):
        limiter.record_failed_attempt("10.0.0.1")

    payload = limiter.check_rate_limit("10.0.0.1").to_dict()

    assert payload["remainingAttempts"] == 0
    assert payload["lockoutEndsAt"] == (clock.now + timedelta(minutes=5)).isoformat()


def test_exhausted_record_without_lockout_is_not_allowed():
    limiter, store, clock = make_limiter()
    store.upsert("10.0.0.1", {"attempt_count": 3, "last_attempt_at": clock.now, "lockout_until": None})

    result = limiter.check_rate_limit("10.0.0.1")

    assert result.allowed is False
    assert result.remaining_attempts == 0
