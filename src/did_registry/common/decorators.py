"""Common decorators for registry components."""

from __future__ import annotations

import functools
import inspect
from collections.abc import Awaitable, Callable
from typing import ParamSpec, TypeVar

import structlog
from opentelemetry import trace
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from did_registry.common.exceptions import RegistryError

logger = structlog.get_logger()

P = ParamSpec("P")
T = TypeVar("T")


def retry_with_backoff(
    max_attempts: int = 3,
    base_delay: float = 0.2,
    max_delay: float = 5.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """
    Retry decorator with exponential backoff for async functions.

    The last exception is re-raised unchanged once attempts are exhausted,
    so callers keep seeing the typed error.

    Args:
        max_attempts: Maximum number of attempts
        base_delay: Initial delay between retries (seconds)
        max_delay: Maximum delay between retries (seconds)
        exceptions: Tuple of exception types to retry on
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        def _log_attempt(state: RetryCallState) -> None:
            error = state.outcome.exception() if state.outcome else None
            logger.warning(
                "retry_attempt",
                func=func.__name__,
                attempt=state.attempt_number,
                max_attempts=max_attempts,
                error=str(error),
            )

        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max_attempts),
                wait=wait_exponential(multiplier=base_delay, max=max_delay),
                retry=retry_if_exception_type(exceptions),
                before_sleep=_log_attempt,
                reraise=True,
            ):
                with attempt:
                    return await func(*args, **kwargs)
            raise AssertionError("unreachable")  # pragma: no cover

        return wrapper

    return decorator


def trace_span(
    operation_name: str | None = None,
    record_args: dict[str, str] | None = None,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """
    Run a registry operation inside an OpenTelemetry span.

    Failures carry the registry error code and whether the caller may retry.

    Args:
        operation_name: Span name (defaults to the function's qualified name)
        record_args: Maps argument names to span attribute names, e.g.
            ``{"subject_did": "registry.subject"}``
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        signature = inspect.signature(func)
        span_name = operation_name or func.__qualname__

        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            tracer = trace.get_tracer("did_registry")
            with tracer.start_as_current_span(span_name) as span:
                if record_args:
                    bound = signature.bind_partial(*args, **kwargs).arguments
                    for name, attribute in record_args.items():
                        if bound.get(name) is not None:
                            span.set_attribute(attribute, str(bound[name]))

                try:
                    return await func(*args, **kwargs)
                except RegistryError as e:
                    span.set_attribute("registry.error.code", e.code)
                    span.set_attribute("registry.error.retryable", e.retryable)
                    raise

        return wrapper

    return decorator
