from __future__ import annotations

import threading
from concurrent.futures import Future
from typing import Optional

from ravendb_subscriptions.primitives.exceptions import OperationCancelledException


class CancellationTokenSource:
    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._cancelled_future: Future = Future()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def get_token(self) -> CancellationToken:
        return self.CancellationToken(self)

    class CancellationToken:
        def __init__(self, source: CancellationTokenSource):
            self.__source = source

        def is_cancellation_requested(self) -> bool:
            return self.__source.cancelled

        def throw_if_cancellation_requested(self) -> None:
            if self.is_cancellation_requested():
                raise OperationCancelledException()

        def wait(self, timeout_in_seconds: Optional[float]) -> bool:
            """
            Sleeps for up to timeout_in_seconds, returning early once cancellation is requested.
            Returns True when cancelled.
            """
            return self.__source._event.wait(timeout_in_seconds)

        @property
        def future(self) -> Future:
            # resolves on cancel, lets callers wait on work OR cancellation with concurrent.futures.wait
            return self.__source._cancelled_future

    def cancel(self) -> None:
        with self._lock:
            self._event.set()
            if not self._cancelled_future.done():
                self._cancelled_future.set_result(None)

