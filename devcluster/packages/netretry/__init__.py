from .retry import (
    TRANSIENT_MARKERS,
    RetryCancelledError,
    exponential_delay,
    is_retryable,
    retry_async,
)

__all__ = [
    "TRANSIENT_MARKERS",
    "RetryCancelledError",
    "exponential_delay",
    "is_retryable",
    "retry_async",
]
