"""
Retry Helper
============
Bounded retry for calls to external collaborators.

Rules:
    - Only TransientInfraError and httpx transport/timeout errors are retried.
    - httpx 5xx responses count as transient, 4xx do not.
    - HTTP 401/403 surfaces immediately as ConfigurationError.
    - ConfigurationError and every other PipelineError surface immediately.
    - After the last attempt the error surfaces as TransientInfraError so the
      Stage Runner records a stage failure with a stable error kind.
"""
import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

import httpx

from conductor.core.config import RETRY_ATTEMPTS, RETRY_BACKOFF_SECONDS
from conductor.core.exceptions import ConfigurationError, TransientInfraError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, TransientInfraError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    return isinstance(exc, (httpx.TransportError, httpx.TimeoutException))


async def with_retries(
    call: Callable[[], Awaitable[T]],
    description: str,
    attempts: int = RETRY_ATTEMPTS,
    backoff_seconds: float = RETRY_BACKOFF_SECONDS,
) -> T:
    """
    Await ``call()`` up to ``attempts`` times with linear backoff.

    Parameters
    ----------
    call : Callable[[], Awaitable[T]]
        Zero-argument coroutine factory; invoked once per attempt.
    description : str
        Human readable name for log lines ("scan repo/app:42").
    """
    attempts = max(1, attempts)
    last_error: BaseException | None = None

    for attempt in range(1, attempts + 1):
        try:
            return await call()
        except Exception as e:
            if isinstance(e, httpx.HTTPStatusError) and e.response.status_code in (401, 403):
                raise ConfigurationError(
                    f"{description} rejected credentials (HTTP {e.response.status_code})"
                ) from e
            if not is_transient(e):
                raise
            last_error = e
            logger.warning(
                "%s failed (attempt %d/%d): %s", description, attempt, attempts, e
            )
            if attempt < attempts:
                await asyncio.sleep(backoff_seconds * attempt)

    details = dict(getattr(last_error, "details", None) or {})
    details["last_error"] = str(last_error)
    raise TransientInfraError(
        f"{description} failed after {attempts} attempts",
        details,
    ) from last_error
