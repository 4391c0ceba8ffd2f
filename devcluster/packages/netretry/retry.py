"""Transient network error classification and exponential backoff.

Used by clients that talk to remote endpoints outside the cluster, such as
chart repositories. Registry health checks poll on a fixed interval instead.
"""

import re
from collections.abc import Awaitable, Callable
from typing import Optional, TypeVar

import httpx
import structlog

from devcluster.packages.parallel import CancellationScope

logger = structlog.stdlib.get_logger(__name__)

T = TypeVar("T")

TRANSIENT_MARKERS = (
    # HTTP 5xx reason phrases
    "Internal Server Error",
    "Bad Gateway",
    "Service Unavailable",
    "Gateway Timeout",
    # TCP level
    "connection reset by peer",
    "connection refused",
    "i/o timeout",
    "TLS handshake timeout",
    "unexpected EOF",
    "no such host",
)

# Word boundaries keep port numbers such as ":5000" from matching
_STATUS_CODE_PATTERN = re.compile(r"\b50[0-4]\b")


class RetryCancelledError(Exception):
    pass


def is_retryable(err: Optional[BaseException]) -> bool:
    """Report whether ``err`` looks like a transient network failure."""
    if err is None:
        return False

    if isinstance(err, httpx.HTTPStatusError):
        return 500 <= err.response.status_code <= 504
    if isinstance(
        err, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)
    ):
        return True

    message = str(err)
    if any(marker in message for marker in TRANSIENT_MARKERS):
        return True

    return _STATUS_CODE_PATTERN.search(message) is not None


def exponential_delay(attempt: int, base: float, maximum: float) -> float:
    """Backoff delay for a 1-indexed attempt: ``min(base * 2**(attempt-1), maximum)``."""
    if attempt < 1:
        attempt = 1
    # Avoid huge intermediates for large attempt numbers
    if attempt > 62:
        return maximum
    return min(base * (2 ** (attempt - 1)), maximum)


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base: float = 2.0,
    maximum: float = 10.0,
    scope: Optional[CancellationScope] = None,
    description: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds or fails with a non-transient error.

    Raises:
        RetryCancelledError: If ``scope`` is cancelled while backing off
        Exception: The last error from ``operation``
    """
    attempt = 1
    while True:
        try:
            return await operation()
        except Exception as e:
            if not is_retryable(e) or attempt >= attempts:
                raise

            delay = exponential_delay(attempt, base, maximum)
            logger.info(
                "Transient failure, retrying",
                operation=description,
                attempt=attempt,
                delay_seconds=delay,
                error=str(e),
            )

            if scope is None:
                scope = CancellationScope()
            if not await scope.sleep(delay):
                raise RetryCancelledError(f"{description} cancelled") from e

            attempt += 1
