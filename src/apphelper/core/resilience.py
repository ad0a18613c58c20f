"""Resilience patterns that keep the event loop alive.

Key principles:

1. No single action failure may tear down event dispatch
2. Errors are captured and reported, not propagated
3. Actions from one event run independently of each other
4. Clear distinction between expected failures and bugs

Usage:
    dispatcher = ActionDispatcher(max_workers=4)
    future = dispatcher.submit("cleanup Safari", executor.perform, rule, event)
    # future.result() is an ExecutionResult, never an exception
"""
from __future__ import annotations

import functools
import logging
import threading
import time
import traceback
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FuturesTimeout
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ExecutionResult:
    """Result of running one dispatched action."""

    name: str
    value: Any
    execution_time_ms: float
    error: Optional[str] = None
    error_type: Optional[str] = None
    traceback: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def with_graceful_degradation(
    default_return: T,
    log_errors: bool = True,
    error_message: str = "Operation failed",
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for graceful degradation on errors.

    Wraps a function to catch all exceptions and return a default
    value instead of propagating the error.

    Args:
        default_return: Value to return on error
        log_errors: Whether to log caught errors
        error_message: Message to log with errors

    Returns:
        Decorated function that won't raise exceptions
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> T:
            try:
                return func(*args, **kwargs)
            except Exception as exc:
                if log_errors:
                    logger.error(
                        "%s: %s - %s",
                        error_message,
                        type(exc).__name__,
                        str(exc),
                    )
                    logger.debug("Traceback: %s", traceback.format_exc())
                return default_return

        return wrapper

    return decorator


class ActionDispatcher:
    """Runs remediation actions concurrently on a worker pool.

    Each submitted action is isolated: an exception inside it is logged
    and captured in its ExecutionResult, and never reaches the caller
    that dispatched it.
    """

    def __init__(self, max_workers: int = 4, thread_name_prefix: str = "action") -> None:
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=thread_name_prefix)
        self._pending: List[Future] = []
        self._lock = threading.Lock()
        self._closed = False

    def submit(self, name: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Optional[Future]:
        """Schedule ``func`` and return a future of its ExecutionResult.

        Returns None once the dispatcher has been shut down.
        """
        with self._lock:
            if self._closed:
                logger.debug("Dispatcher closed, dropping action %s", name)
                return None
            future = self._pool.submit(self._run, name, func, *args, **kwargs)
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(future)
            return future

    @staticmethod
    def _run(name: str, func: Callable[..., Any], *args: Any, **kwargs: Any) -> ExecutionResult:
        start_time = time.monotonic()
        try:
            value = func(*args, **kwargs)
        except Exception as exc:  # noqa: BLE001 - isolation boundary
            elapsed = (time.monotonic() - start_time) * 1000
            logger.exception("Action %s failed", name)
            return ExecutionResult(
                name=name,
                value=None,
                execution_time_ms=elapsed,
                error=str(exc),
                error_type=type(exc).__name__,
                traceback=traceback.format_exc(),
            )
        elapsed = (time.monotonic() - start_time) * 1000
        logger.debug("Action %s finished in %.1fms", name, elapsed)
        return ExecutionResult(name=name, value=value, execution_time_ms=elapsed)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every submitted action has finished."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._lock:
            pending = list(self._pending)
        for future in pending:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            try:
                future.result(timeout=remaining)
            except FuturesTimeout:
                return False
        return True

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._pool.shutdown(wait=wait, cancel_futures=not wait)
