"""Circuit breaker state machine and retry_sync behaviour."""

import pytest

from avif_backend.services import resilience_utils as ru


def test_breaker_opens_after_threshold_and_recovers(monkeypatch):
    clock = [100.0]
    monkeypatch.setattr(ru.time, "monotonic", lambda: clock[0])
    cb = ru.CircuitBreaker("t", failure_threshold=2, recovery_timeout=10)

    cb.record_failure(ConnectionError("x"))
    assert cb.state == "CLOSED"
    cb.record_failure(ConnectionError("x"))
    assert cb.state == "OPEN"
    assert cb.allow_request() is False

    clock[0] += 11
    assert cb.allow_request() is True
    assert cb.state == "HALF_OPEN"
    assert cb.allow_request() is False
    cb.record_success()
    assert cb.state == "CLOSED"


def test_half_open_failure_reopens(monkeypatch):
    clock = [0.0]
    monkeypatch.setattr(ru.time, "monotonic", lambda: clock[0])
    cb = ru.CircuitBreaker("h", failure_threshold=1, recovery_timeout=1)
    cb.record_failure()
    clock[0] = 5
    assert cb.allow_request()
    cb.record_failure()
    assert cb.state == "OPEN"


def test_registry_returns_singletons():
    a = ru.get_circuit_breaker("cdn_publish_test")
    assert ru.get_circuit_breaker("cdn_publish_test") is a
    a.record_failure()
    assert ru.list_circuit_breakers()["cdn_publish_test"]["failure_count"] == 1
    ru.reset_all_circuit_breakers()
    assert a.status()["failure_count"] == 0


def test_retry_sync_retries_transient_then_succeeds(monkeypatch):
    monkeypatch.setattr(ru.time, "sleep", lambda s: None)
    attempts = []

    def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise ConnectionError("reset by peer")
        return "ok"

    assert ru.retry_sync(flaky, retries=2, backoff=0.01) == "ok"
    assert len(attempts) == 3


def test_retry_sync_fails_fast_on_non_transient():
    attempts = []

    def bad():
        attempts.append(1)
        raise KeyError("missing")

    with pytest.raises(KeyError):
        ru.retry_sync(bad, retries=5, backoff=0)
    assert len(attempts) == 1


def test_retry_sync_raises_last_error_when_exhausted(monkeypatch):
    monkeypatch.setattr(ru.time, "sleep", lambda s: None)
    with pytest.raises(TimeoutError):
        ru.retry_sync(lambda: (_ for _ in ()).throw(TimeoutError("slow")), retries=1, backoff=0)


def test_retry_sync_respects_open_breaker():
    cb = ru.CircuitBreaker("blocked", failure_threshold=1)
    cb.record_failure()
    with pytest.raises(ru.CircuitBreakerOpen):
        ru.retry_sync(lambda: "never", breaker=cb)


@pytest.mark.parametrize("kwargs", [{"retries": -1}, {"backoff": -1}, {"max_backoff": -2}])
def test_retry_sync_validates_arguments(kwargs):
    with pytest.raises(ValueError):
        ru.retry_sync(lambda: None, **kwargs)
