import asyncio

import httpx
import pytest

from retry_policy import backoff_delay, call_with_retry, is_retryable_error


def status_error(code):
    request = httpx.Request("GET", "http://game.test/api/game/g1")
    response = httpx.Response(code, request=request)
    return httpx.HTTPStatusError(f"status {code}", request=request, response=response)


def test_classification():
    assert is_retryable_error(status_error(429))
    assert is_retryable_error(status_error(503))
    assert not is_retryable_error(status_error(400))
    assert not is_retryable_error(status_error(404))
    assert is_retryable_error(httpx.ConnectError("refused"))
    assert is_retryable_error(httpx.ReadTimeout("slow"))
    assert is_retryable_error(ConnectionResetError())
    assert not is_retryable_error(ValueError("bad json"))


def test_backoff_grows_exponentially():
    assert 4.0 <= backoff_delay(2, 1.0) <= 5.0
    assert backoff_delay(0, 2.0, jitter=0) == 2.0


def test_retries_until_success():
    delays = []
    attempts = []

    async def sleep(seconds):
        delays.append(seconds)

    async def op():
        attempts.append(1)
        if len(attempts) < 3:
            raise status_error(502)
        return "ok"

    assert asyncio.run(call_with_retry(op, max_attempts=3, base_delay=1.0, sleep=sleep)) == "ok"
    assert len(attempts) == 3
    assert len(delays) == 2
    assert 1.0 <= delays[0] <= 2.0
    assert 2.0 <= delays[1] <= 3.0


def test_terminal_error_is_not_retried():
    attempts = []

    async def sleep(seconds):
        raise AssertionError("should not sleep")

    async def op():
        attempts.append(1)
        raise status_error(400)

    with pytest.raises(httpx.HTTPStatusError):
        asyncio.run(call_with_retry(op, max_attempts=5, sleep=sleep))
    assert len(attempts) == 1


def test_last_error_surfaces_after_exhaustion():
    attempts = []

    async def sleep(seconds):
        return None

    async def op():
        attempts.append(1)
        raise httpx.ConnectError(f"attempt {len(attempts)}")

    with pytest.raises(httpx.ConnectError, match="attempt 4"):
        asyncio.run(call_with_retry(op, max_attempts=4, sleep=sleep))
    assert len(attempts) == 4
