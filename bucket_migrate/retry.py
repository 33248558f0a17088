"""Retry with exponential backoff for storage backend calls.

Store adapters wrap every network call in ``with_retry``. Errors are classified
as retryable (timeouts, throttling, 5xx) or not (auth, not found, bad request);
only retryable errors are retried, honoring ``Retry-After`` when the backend
sends one.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any, TypeVar

import httpx
import structlog
from botocore.exceptions import ClientError, HTTPClientError
from botocore.exceptions import ConnectionError as BotoConnectionError

logger = structlog.get_logger(__name__)

T = TypeVar("T")

HTTP_STATUS_TOO_MANY_REQUESTS = 429
RETRYABLE_STATUS_CODES = {408, 409, 425, 429, 500, 502, 503, 504}
RETRYABLE_S3_ERROR_CODES = {
    "SlowDown",
    "Throttling",
    "ThrottlingException",
    "RequestTimeout",
    "RequestTimeTooSkewed",
    "InternalError",
    "ServiceUnavailable",
}
MAX_RETRY_DELAY = 60.0


def parse_retry_after_seconds(raw: str | None) -> float | None:
    """Parse a ``Retry-After`` header value (seconds or HTTP date)."""
    if not raw:
        return None
    raw = raw.strip()
    # Most common: integer seconds
    try:
        sec = float(raw)
        if sec >= 0:
            return sec
    except ValueError:
        pass
    # RFC 7231 date format fallback
    try:
        dt = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    sec = (dt - datetime.now(UTC)).total_seconds()
    return sec if sec >= 0 else None


def classify_exception(exc: BaseException) -> tuple[bool, int | None, float | None]:
    """Return (retryable, status_code, retry_after_seconds)."""
    if isinstance(exc, httpx.HTTPStatusError):
        status = int(exc.response.status_code)
        retry_after = parse_retry_after_seconds(exc.response.headers.get("Retry-After"))
        return status in RETRYABLE_STATUS_CODES, status, retry_after
    if isinstance(exc, httpx.RequestError):
        # Network/DNS/timeouts/etc.
        return True, None, None
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        meta = exc.response.get("ResponseMetadata", {})
        status = meta.get("HTTPStatusCode")
        status = int(status) if status is not None else None
        code = str(error.get("Code", ""))
        retryable = code in RETRYABLE_S3_ERROR_CODES or (
            status is not None and status in RETRYABLE_STATUS_CODES
        )
        return retryable, status, None
    if isinstance(exc, BotoConnectionError | HTTPClientError):
        return True, None, None
    if isinstance(exc, asyncio.TimeoutError | ConnectionError):
        return True, None, None
    return False, None, None


def _exc_context(exc: BaseException) -> dict[str, Any]:
    ctx: dict[str, Any] = {"error_type": type(exc).__name__}
    if isinstance(exc, httpx.HTTPStatusError):
        ctx["request_method"] = exc.request.method
        ctx["request_url"] = str(exc.request.url)
        try:
            ctx["response_text_excerpt"] = exc.response.text[:500]
        except httpx.ResponseNotRead:
            pass
    elif isinstance(exc, httpx.RequestError):
        try:
            ctx["request_method"] = exc.request.method
            ctx["request_url"] = str(exc.request.url)
        except RuntimeError:
            # The request attribute is unset on errors raised outside a transport.
            pass
    elif isinstance(exc, ClientError):
        ctx["error_code"] = exc.response.get("Error", {}).get("Code")
    return ctx


def backoff_delay(attempt: int, base_delay: float, max_delay: float = MAX_RETRY_DELAY) -> float:
    """Exponential backoff with a little jitter for the given 1-based attempt."""
    exp_delay = min(max_delay, base_delay * (2 ** (attempt - 1)))
    # small jitter to avoid thundering herd
    jitter = random.uniform(0, min(1.0, exp_delay * 0.1))
    return min(max_delay, exp_delay + jitter)


async def with_retry(
    operation_name: str,
    coro_func: Callable[[], Awaitable[T]],
    *,
    retry_attempts: int = 3,
    retry_delay: float = 1.0,
    log: Any | None = None,
) -> T:
    """Execute a coroutine function with retry logic.

    Args:
        operation_name: Human-readable name for the operation.
        coro_func: Callable that returns a new awaitable per attempt.
        retry_attempts: Extra attempts after the first one.
        retry_delay: Initial delay between retries in seconds.
        log: Optional bound logger to report on.

    Returns:
        Result of the awaitable.

    Raises:
        The last exception once attempts are exhausted or it is not retryable.
    """
    _log = log if log is not None else logger
    attempts = int(retry_attempts) + 1

    for attempt in range(1, attempts + 1):
        try:
            return await coro_func()
        except Exception as e:
            retryable, status, retry_after = classify_exception(e)

            if not retryable or attempt >= attempts:
                _log.debug(
                    "Operation failed",
                    operation=operation_name,
                    attempt=attempt,
                    max_attempts=attempts,
                    status_code=status,
                    retryable=retryable,
                    error=str(e),
                    **_exc_context(e),
                )
                raise

            delay = backoff_delay(attempt, retry_delay)
            if retry_after is not None:
                delay = min(MAX_RETRY_DELAY, max(delay, retry_after))

            # Concise message for rate limits (expected behavior), verbose for other errors
            if status == HTTP_STATUS_TOO_MANY_REQUESTS:
                _log.warning(
                    "Rate limited, retrying",
                    operation=operation_name,
                    retry_in_seconds=round(delay, 1),
                    attempt=f"{attempt}/{attempts}",
                )
            else:
                _log.warning(
                    "Operation failed, backing off and retrying",
                    operation=operation_name,
                    attempt=attempt,
                    max_attempts=attempts,
                    status_code=status,
                    retry_after_seconds=retry_after,
                    sleep_seconds=round(delay, 2),
                    error=str(e),
                    **_exc_context(e),
                )
            await asyncio.sleep(delay)

    raise RuntimeError(f"{operation_name} failed with unknown error")
