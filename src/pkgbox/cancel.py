from __future__ import annotations

import threading

from .errors import CancelledError


class CancelToken:
    """
    Cooperative cancellation signal shared by every blocking call of one run.

    Callers check the token at each blocking boundary; once cancelled, the
    reconciliation aborts before anything is committed.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledError("Operation cancelled")
