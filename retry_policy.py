import asyncio
import random
from typing import Awaitable, Callable, Optional, TypeVar

import httpx
import openai

from bot_common import log

T = TypeVar("T")

RETRYABLE_TRANSPORT_ERRORS = (
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.ReadError,
    httpx.WriteError,
    httpx.RemoteProtocolError,
)


def _status_of(exc: BaseException) -> Optional[int]:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    if isinstance(exc, openai.APIStatusError):
        return exc.status_code
    return None


def is_retryable_error(exc: BaseException) -> bool:
    """Rate limits, 5xx and transient connectivity failures are worth another try."""
    status = _status_of(exc)
    if status is not None:
        return status == 429 or status >= 500
    if isinstance(exc, RETRYABLE_TRANSPORT_ERRORS):
        return True
    # APITimeoutError is a subclass of APIConnectionError.
    if isinstance(exc, openai.APIConnectionError):
        return True
    if isinstance(exc, (ConnectionResetError, ConnectionRefusedError, TimeoutError)):
        return True
    return False


def backoff_delay(attempt: int, base_delay: float, jitter: float = 1.0) -> float:
    return base_delay * (2 ** attempt) + random.uniform(0, jitter)


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "call",
) -> T:
    """Run ``operation`` until it succeeds, fails terminally, or attempts run out.

    The last error is re-raised once ``max_attempts`` have been used.
    """
    attempts = max(1, max_attempts)
    for attempt in range(attempts):
        try:
            return await operation()
        except Exception as exc:
            if attempt == attempts - 1 or not is_retryable_error(exc):
                raise
            delay = backoff_delay(attempt, base_delay)
            log(f"[retry] {label} attempt {attempt + 1} failed ({exc}), retrying in {delay:.2f}s")
            await sleep(delay)
    raise RuntimeError("unreachable")
