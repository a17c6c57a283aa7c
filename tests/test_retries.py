import asyncio
import httpx
import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from fulfillment.common.circuit_breaker import CircuitBreaker, CircuitOpenError
from fulfillment.common.retries import backoff_delay, is_recoverable_exception, retry_async, supervise


class Flaky:
    def __init__(self, failures, exc=ConnectionError("reset by peer")):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return "ok"


def status_error(code):
    request = httpx.Request("POST", "https://vendor.test/orders")
    return httpx.HTTPStatusError("boom", request=request, response=httpx.Response(code, request=request))


def test_backoff_grows_and_caps():
    assert [backoff_delay(n, 2.0) for n in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 16.0]
    assert backoff_delay(10, 2.0, max_delay=30.0) == 30.0


@pytest.mark.parametrize("exc, expected", [
    (httpx.ConnectError("refused"), True),
    (status_error(503), True),
    (status_error(429), True),
    (status_error(422), False),
    (OperationalError("select 1", {}, Exception("database is locked")), True),
    (IntegrityError("insert", {}, Exception("unique")), False),
    (CircuitOpenError("open"), True),
    (ValueError("bad payload"), False),
])
def test_recoverable_classification(exc, expected):
    assert is_recoverable_exception(exc) is expected


async def test_retry_until_success():
    op = Flaky(failures=2)
    assert await retry_async(op, attempts=3, base_delay=0) == "ok"
    assert op.calls == 3


async def test_retry_gives_up_with_last_error():
    op = Flaky(failures=5)
    with pytest.raises(ConnectionError):
        await retry_async(op, attempts=3, base_delay=0)
    assert op.calls == 3


async def test_non_retryable_error_is_raised_immediately():
    op = Flaky(failures=5, exc=ValueError("bad payload"))
    with pytest.raises(ValueError):
        await retry_async(op, attempts=3, base_delay=0, if_retryable=is_recoverable_exception)
    assert op.calls == 1


async def test_cancellation_is_not_retried():
    op = Flaky(failures=5, exc=asyncio.CancelledError())
    with pytest.raises(asyncio.CancelledError):
        await retry_async(op, attempts=3, base_delay=0)
    assert op.calls == 1


async def test_supervise_hands_final_error_to_handler():
    seen = []

    async def on_exhausted(exc):
        seen.append(exc)

    op = Flaky(failures=5)
    assert await supervise(op, on_exhausted=on_exhausted, attempts=2, base_delay=0) is None
    assert op.calls == 2
    assert len(seen) == 1 and isinstance(seen[0], ConnectionError)


async def test_supervise_survives_a_failing_handler():
    async def on_exhausted(exc):
        raise RuntimeError("note write failed")

    assert await supervise(Flaky(failures=5), on_exhausted=on_exhausted, attempts=1, base_delay=0) is None


async def test_supervise_returns_result():
    async def on_exhausted(exc):
        raise AssertionError("should not be called")

    assert await supervise(Flaky(failures=1), on_exhausted=on_exhausted, attempts=2, base_delay=0) == "ok"


async def test_circuit_opens_and_recovers():
    breaker = CircuitBreaker(name="vendor", failure_threshold=2, recovery_timeout=30)

    for _ in range(2):
        await breaker.before_call()
        await breaker.after_call(success=False)
    assert breaker.state == "OPEN"
    with pytest.raises(CircuitOpenError):
        await breaker.before_call()

    breaker._opened_at -= 30
    await breaker.before_call()
    assert breaker.state == "HALF_OPEN"
    await breaker.after_call(success=False)
    assert breaker.state == "OPEN"

    breaker._opened_at -= 30
    await breaker.before_call()
    await breaker.after_call(success=True)
    assert breaker.state == "CLOSED"
