"""Logging helpers for failures that must not stop an engine loop.

Notifications, automation events, learning lookups and usage summaries are
best-effort. Engines call them through these helpers so a broken
collaborator is logged and otherwise ignored.
"""

import logging
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

R = TypeVar("R")


def log_and_ignore(
    error: Exception,
    message: str,
    *,
    log_to: Optional[logging.Logger] = None,
    level: int = logging.WARNING,
) -> None:
    """Record ``error`` under ``message`` and carry on."""
    (log_to or logger).log(level, f"{message}: {error}")


def log_and_reraise(error: Exception, message: str, *, log_to: Optional[logging.Logger] = None) -> None:
    """Record ``error`` at ERROR level, then raise it again."""
    (log_to or logger).error(f"{message}: {error}")
    raise error


def safe_call(
    func: Callable[..., R],
    *args,
    default: Optional[R] = None,
    error_message: str = "Best-effort call failed",
    log_to: Optional[logging.Logger] = None,
    **kwargs,
) -> Optional[R]:
    """Return ``func(*args, **kwargs)``, or ``default`` when it raises."""
    try:
        return func(*args, **kwargs)
    except Exception as e:
        log_and_ignore(e, error_message, log_to=log_to)
        return default


class ErrorContext:
    """Log an exception raised inside the block, swallowing it unless ``raise_on_error``.

    The captured exception stays on ``error`` so the caller can tell whether
    the block finished::

        with ErrorContext("marking goal failed", raise_on_error=False) as ctx:
            store.update(goal_id, mark_failed)
        if ctx.error is not None:
            return
    """

    def __init__(
        self,
        operation: str,
        *,
        raise_on_error: bool = True,
        log_to: Optional[logging.Logger] = None,
        level: int = logging.ERROR,
    ):
        self.operation = operation
        self.raise_on_error = raise_on_error
        self.log_to = log_to or logger
        self.level = level
        self.error: Optional[Exception] = None

    def __enter__(self) -> "ErrorContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        # Cancellation and KeyboardInterrupt always propagate
        if exc is None or not isinstance(exc, Exception):
            return False
        self.error = exc
        self.log_to.log(self.level, f"Error during {self.operation}: {exc}")
        return not self.raise_on_error
