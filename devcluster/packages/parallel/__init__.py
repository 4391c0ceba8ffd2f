"""Bounded, fail-fast parallel execution helpers."""

from .executor import (
    CancellationScope,
    ExecutionCancelledError,
    ParallelExecutionError,
    ParallelExecutor,
    Results,
    SyncWriter,
    Task,
    default_max_concurrency,
)

__all__ = [
    "CancellationScope",
    "ExecutionCancelledError",
    "ParallelExecutionError",
    "ParallelExecutor",
    "Results",
    "SyncWriter",
    "Task",
    "default_max_concurrency",
]
