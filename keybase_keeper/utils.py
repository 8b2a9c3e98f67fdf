"""Cancellation helpers shared by the resolver and the codec paths."""
import time
import threading
from typing import Optional

from .exceptions import DeadlineExceeded


def check_cancelled(
    cancel: Optional[threading.Event],
    operation: str,
    username: Optional[str] = None,
) -> None:
    """Raise DeadlineExceeded if the caller's cancellation event is set.

    Args:
        cancel: Event set by the caller (or a ``threading.Timer``) to abort.
        operation: Name of the running operation, for the error context.
        username: Optional username the operation is working on.

    Raises:
        DeadlineExceeded: If ``cancel`` is set.
    """
    if cancel is not None and cancel.is_set():
        raise DeadlineExceeded(
            "operation cancelled", username=username, operation=operation,
        )


def cancellable_sleep(cancel: Optional[threading.Event], seconds: float) -> None:
    """Sleep for ``seconds``, waking early and raising if cancelled."""
    if cancel is None:
        time.sleep(seconds)
        return
    if cancel.wait(seconds):
        raise DeadlineExceeded("operation cancelled while waiting to retry")
