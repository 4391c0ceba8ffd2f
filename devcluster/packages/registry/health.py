"""Registry readiness polling.

Polls ``/v2/`` on a fixed interval until the registry answers. A registry
returns 200, or 401 when it requires authentication, once it is serving.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Optional

import aiodocker
import httpx
import structlog

from devcluster.packages.parallel import CancellationScope

from .errors import (
    HealthCheckCancelledError,
    RegistryNotReadyError,
    RegistryUnexpectedStatusError,
)

logger = structlog.stdlib.get_logger(__name__)

StatusChecker = Callable[[], Awaitable[bool]]


def build_health_check_url(host_ip: str, port: int) -> str:
    return f"http://{host_ip}:{port}/v2/"


def is_connection_refused(err: Optional[BaseException]) -> bool:
    """True if ``err`` or anything in its cause chain is a refused connection."""
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        seen.add(id(err))
        if isinstance(err, ConnectionRefusedError):
            return True
        message = str(err).lower()
        if "connection refused" in message or "connect call failed" in message:
            return True
        err = err.__cause__ or err.__context__
    return False


async def check_registry_health(
    client: httpx.AsyncClient, url: str, request_timeout: float
) -> None:
    """Perform a single health check request.

    Raises:
        RegistryUnexpectedStatusError: If the registry answered with another status
        httpx.HTTPError: If the request itself failed
    """
    response = await client.get(url, timeout=request_timeout)
    status = response.status_code
    if 200 <= status < 300 or status == 401:
        return
    raise RegistryUnexpectedStatusError(status)


async def poll_until_ready(
    name: str,
    url: str,
    *,
    client: httpx.AsyncClient,
    is_running: StatusChecker,
    timeout: float,
    poll_interval: float,
    request_timeout: float,
    refused_threshold: int,
    scope: Optional[CancellationScope] = None,
) -> None:
    """Poll ``url`` until the registry is ready.

    After ``refused_threshold`` consecutive refused connections the container
    state is checked; a stopped container fails the wait immediately instead
    of running out the timeout.

    Raises:
        RegistryNotReadyError: On timeout, or when the container has exited
        HealthCheckCancelledError: If ``scope`` is cancelled first
    """
    if scope is None:
        scope = CancellationScope()

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    last_error: Optional[BaseException] = None
    refused_count = 0

    while True:
        if scope.cancelled:
            raise HealthCheckCancelledError(f"registry health check cancelled: {name}")

        try:
            await check_registry_health(client, url, request_timeout)
            logger.info("Registry is ready", registry=name, url=url)
            return
        except RegistryUnexpectedStatusError as e:
            last_error = e
            refused_count = 0
        except httpx.HTTPError as e:
            last_error = e
            if is_connection_refused(e):
                refused_count += 1
            else:
                refused_count = 0

        if refused_count >= refused_threshold:
            running = await _container_running(name, is_running)
            if running is False:
                raise RegistryNotReadyError(
                    f"registry not ready within timeout: {name} (container is not running)"
                ) from last_error
            # Still running, check again after another streak
            refused_count = 0

        remaining = deadline - loop.time()
        if remaining <= 0:
            message = f"registry not ready within timeout: {name}"
            if last_error is not None:
                message += f" (last error: {last_error})"
            raise RegistryNotReadyError(message) from last_error

        if not await scope.sleep(min(poll_interval, remaining)):
            raise HealthCheckCancelledError(f"registry health check cancelled: {name}")


async def _container_running(name: str, is_running: StatusChecker) -> Optional[bool]:
    try:
        return await is_running()
    except aiodocker.exceptions.DockerError as e:
        # Inconclusive, keep polling until the timeout decides
        logger.warning(
            "Could not check registry container state",
            registry=name,
            error=str(e),
        )
        return None
