"""Caller-supplied cancellation token."""

import threading

from fidelity.errors import OperationCancelledError


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and the engine.

    The engine checks the token before loading an image, before each region
    crop and before a score is appended to the iteration history.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, operation: str) -> None:
        """Raise :class:`OperationCancelledError` if the token was cancelled.

        Args:
            operation: Short description of the step being aborted.
        """
        if self._event.is_set():
            msg = f"Operation cancelled: {operation}"
            raise OperationCancelledError(msg)


def check_cancelled(token: CancellationToken | None, operation: str) -> None:
    """Helper accepting an optional token."""
    if token is not None:
        token.raise_if_cancelled(operation)
