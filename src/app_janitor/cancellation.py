"""!
@brief Cooperative cancellation shared by long-running operations.
@details A token wraps a :class:`threading.Event`. Sibling tasks of one batch
share a single token, so cancelling it stops all of them at their next check.
A child token observes its parent and can also be cancelled on its own, which
stops one batch without touching the parent.
"""
from __future__ import annotations

import threading
import time

from .errors import OperationCancelled

_PARENT_POLL_SECONDS = 0.05


class CancellationToken:
    """!
    @brief Thread-safe cancellation flag.
    @param parent Optional token whose cancellation also cancels this one.
    """

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._event = threading.Event()
        self._parent = parent

    def child(self) -> CancellationToken:
        """!
        @brief Create a token cancelled together with this one.
        @details Cancelling the child leaves this token untouched.
        """

        return CancellationToken(self)

    def cancel(self) -> None:
        """!
        @brief Request cancellation of every operation observing this token.
        """

        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set() or (self._parent is not None and self._parent.cancelled)

    def raise_if_cancelled(self) -> None:
        """!
        @brief Raise :class:`OperationCancelled` once cancellation was requested.
        """

        if self.cancelled:
            raise OperationCancelled("Operation cancelled")

    def wait(self, timeout: float | None = None) -> bool:
        """!
        @brief Block up to ``timeout`` seconds for cancellation.
        @returns ``True`` when the token was cancelled.
        """

        if self._parent is None:
            return self._event.wait(timeout)
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self.cancelled:
            step = _PARENT_POLL_SECONDS
            if deadline is not None:
                step = min(step, deadline - time.monotonic())
                if step <= 0:
                    return False
            self._event.wait(step)
        return True


__all__ = ["CancellationToken"]
