"""
Cooperative cancellation helpers

Long-running and validation operations accept an optional ``cancel_event``.
Anything exposing ``is_set()`` works, so both ``threading.Event`` and
``asyncio.Event`` can be passed.
"""
from typing import Any, Optional


class OperationCancelledError(Exception):
    """Raised when an operation is asked to run with an already-set cancel event"""

    def __init__(self, operation: str = "operation"):
        self.operation = operation
        super().__init__(f"{operation} was cancelled")


def is_cancelled(cancel_event: Optional[Any]) -> bool:
    return cancel_event is not None and cancel_event.is_set()


def throw_if_cancelled(cancel_event: Optional[Any], operation: str = "operation") -> None:
    """Raise OperationCancelledError if the cancel event is set."""
    if is_cancelled(cancel_event):
        raise OperationCancelledError(operation)
