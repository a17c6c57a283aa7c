import asyncio
import random
from typing import Any, Awaitable, Callable, Optional
import httpx
from sqlalchemy.exc import DBAPIError,OperationalError
from fulfillment.common.circuit_breaker import CircuitOpenError
from fulfillment.common.logging_setup import get_logger

logger = get_logger("fulfillment.retries")

TRANSIENT_HTTP_EXCEPTIONS = (httpx.ConnectError, httpx.ReadTimeout, httpx.WriteTimeout,
                             httpx.PoolTimeout, httpx.RemoteProtocolError, httpx.NetworkError)


def is_recoverable_exception(exc: BaseException) -> bool:
    if isinstance(exc, asyncio.CancelledError):
        return False
    if isinstance(exc, CircuitOpenError):
        return True
    if isinstance(exc, TRANSIENT_HTTP_EXCEPTIONS):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status_code = exc.response.status_code if exc.response is not None else None
        # 5xx and throttling are worth another try, other 4xx are not
        return bool(status_code and (status_code >= 500 or status_code == 429))
    if isinstance(exc, (TimeoutError, ConnectionError, OperationalError)):
        return True
    if isinstance(exc, DBAPIError):
        if getattr(exc, "connection_invalidated", False):
            return True
        orig = getattr(exc, "orig", None)
        if orig is not None:
            name = type(orig).__name__.lower()
            if any(k in name for k in ("timeout", "connection", "brokenpipe", "connectionrefused", "connectionreset")):
                return True
    return False


def backoff_delay(attempt: int, base_delay: float, factor: float = 2.0, max_delay: float = 30.0) -> float:
    return min(max_delay, base_delay * (factor ** (attempt - 1)))


async def _sleep_with_jitter(delay: float, jitter: float) -> None:
    jitter_val = random.uniform(-jitter * delay, jitter * delay)
    await asyncio.sleep(max(0.0, delay + jitter_val))


async def retry_async(
    operation: Callable[[], Awaitable[Any]],
    *,
    attempts: int = 3,
    base_delay: float = 2.0,
    factor: float = 2.0,
    max_delay: float = 30.0,
    jitter: float = 0.1,
    if_retryable: Optional[Callable[[BaseException], bool]] = None,
    op_name: str = "operation",
):
    """
    Run `operation` up to `attempts` times with exponential backoff between tries.
    Re-raises the last exception once attempts are exhausted or when the error is not retryable.
    `if_retryable=None` retries every ordinary exception.
    """
    attempts = max(1, int(attempts))
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if if_retryable is None:
                retryable = True
            else:
                try:
                    retryable = if_retryable(exc)
                except Exception:
                    retryable = False

            if not retryable or attempt == attempts:
                logger.warning(
                    "retry.giving_up",
                    extra={"op": op_name, "attempt": attempt, "attempts": attempts, "retryable": retryable, "error": str(exc)},
                )
                raise

            delay = backoff_delay(attempt, base_delay, factor, max_delay)
            logger.info(
                "retry.attempt_failed",
                extra={"op": op_name, "attempt": attempt, "next_delay": round(delay, 3), "error": str(exc)},
            )
            await _sleep_with_jitter(delay, jitter)


async def supervise(
    operation: Callable[[], Awaitable[Any]],
    *,
    on_exhausted: Callable[[BaseException], Awaitable[None]],
    op_name: str = "operation",
    **retry_kwargs,
):
    """
    Retry `operation`; when automatic recovery is exhausted hand the final error
    to `on_exhausted` (which writes the manual-intervention record) instead of raising.
    Returns the operation result or None.
    """
    try:
        return await retry_async(operation, op_name=op_name, **retry_kwargs)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.error("supervisor.exhausted", extra={"op": op_name, "error": str(exc)})
        try:
            await on_exhausted(exc)
        except Exception:
            logger.exception("supervisor.on_exhausted_failed", extra={"op": op_name})
        return None
