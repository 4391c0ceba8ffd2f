"""Bounded parallel execution of provisioning tasks.

Tasks are coroutine functions that receive a :class:`CancellationScope`.
The executor never interrupts a running task: when one task fails, the
shared scope is cancelled and the remaining tasks are expected to notice
it (``scope.cancelled``, ``await scope.sleep(...)``) and return early.
"""

import asyncio
import os
import threading
from collections.abc import Awaitable, Callable
from typing import Generic, Optional, TextIO, TypeVar

import structlog

logger = structlog.stdlib.get_logger(__name__)

MIN_CONCURRENCY = 2
# Caps concurrency to avoid overwhelming the container engine
MAX_CONCURRENCY_CAP = 8

T = TypeVar("T")


class ParallelExecutionError(Exception):
    """Raised by :meth:`ParallelExecutor.execute` when a task fails.

    The failing task's exception is available as ``cause`` and ``__cause__``.
    """

    def __init__(self, cause: BaseException):
        super().__init__(f"parallel execution failed: {cause}")
        self.cause = cause


class ExecutionCancelledError(Exception):
    """A queued task was skipped because its scope was already cancelled."""


class CancellationScope:
    """Cooperative cancellation token shared by a group of tasks.

    A child scope is cancelled whenever its parent is, but cancelling a child
    leaves the parent untouched.
    """

    def __init__(self, parent: Optional["CancellationScope"] = None):
        self._event = asyncio.Event()
        self._children: list["CancellationScope"] = []
        self._parent = parent
        self.reason: Optional[BaseException] = None
        if parent is not None:
            parent._children.append(self)
            if parent.cancelled:
                self.cancel(parent.reason)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: Optional[BaseException] = None) -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        for child in self._children:
            child.cancel(reason)

    def child(self) -> "CancellationScope":
        return CancellationScope(parent=self)

    def detach(self) -> None:
        """Stop following the parent scope."""
        if self._parent is not None:
            self._parent._children.remove(self)
            self._parent = None

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep for ``seconds`` unless cancelled first.

        Returns:
            True if the full delay elapsed, False if the scope was cancelled
        """
        if self.cancelled:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return True
        return False


Task = Callable[[CancellationScope], Awaitable[None]]


def default_max_concurrency() -> int:
    """Default concurrency based on available CPUs, clamped to [2, 8]."""
    cpu_count = os.cpu_count() or 1
    return min(max(cpu_count, MIN_CONCURRENCY), MAX_CONCURRENCY_CAP)


class ParallelExecutor:
    def __init__(self, max_concurrency: int = 0):
        if max_concurrency <= 0:
            max_concurrency = default_max_concurrency()
        self.max_concurrency = max_concurrency

    async def execute(self, scope: Optional[CancellationScope], *tasks: Task) -> None:
        """Run all tasks with at most ``max_concurrency`` in flight.

        A single task is awaited directly and its exception propagates as is.
        With two or more tasks, the first failure cancels the shared scope and
        is raised wrapped in :class:`ParallelExecutionError` once every task
        has finished.
        """
        if not tasks:
            return

        if scope is None:
            scope = CancellationScope()

        if len(tasks) == 1:
            await tasks[0](scope)
            return

        group_scope = scope.child()
        slots = asyncio.Semaphore(self.max_concurrency)
        failures: list[BaseException] = []

        async def run(task: Task) -> None:
            async with slots:
                if group_scope.cancelled:
                    if not failures:
                        failures.append(
                            ExecutionCancelledError("cancelled before task started")
                        )
                    return
                try:
                    await task(group_scope)
                except Exception as e:
                    failures.append(e)
                    group_scope.cancel(e)

        try:
            await asyncio.gather(*(run(task) for task in tasks))
        finally:
            group_scope.detach()

        if failures:
            first = failures[0]
            logger.debug(
                "Parallel execution failed",
                task_count=len(tasks),
                failure_count=len(failures),
                error=str(first),
            )
            raise ParallelExecutionError(first) from first


class SyncWriter:
    """Text sink wrapper that emits each ``write`` call as one unit."""

    def __init__(self, writer: TextIO):
        self._lock = threading.Lock()
        self._writer = writer

    def write(self, data: str) -> int:
        with self._lock:
            written = self._writer.write(data)
            self._writer.flush()
            return written

    def flush(self) -> None:
        with self._lock:
            self._writer.flush()


class Results(Generic[T]):
    """Thread-safe collector of values and errors from parallel tasks.

    Values and errors keep completion order, not submission order.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._values: list[T] = []
        self._errors: list[BaseException] = []

    def add(self, value: T) -> None:
        with self._lock:
            self._values.append(value)

    def add_error(self, error: BaseException) -> None:
        with self._lock:
            self._errors.append(error)

    def values(self) -> list[T]:
        with self._lock:
            return list(self._values)

    def errors(self) -> list[BaseException]:
        with self._lock:
            return list(self._errors)

    def has_errors(self) -> bool:
        with self._lock:
            return len(self._errors) > 0
