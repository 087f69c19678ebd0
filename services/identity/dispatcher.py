"""Cancelable request dispatch on the asyncio event loop"""

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional, Set

from .errors import Cancelled, IdentityServiceError

logger = logging.getLogger(__name__)


@dataclass
class Result:
    """Outcome of one dispatched operation: a value or an error"""
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.value


Callback = Callable[[Result], None]


class Cancelable:
    """
    Handle on one in-flight operation.

    The callback fires exactly once with the Result, unless cancel() was
    called first. cancel() after completion is a no-op. The handle can also
    be awaited, yielding the value or raising the failure.
    """

    def __init__(self, task: asyncio.Task, callback: Optional[Callback] = None, key: Hashable = None):
        self.key = key
        self._task = task
        self._callback = callback
        self._cancelled = False
        task.add_done_callback(self._on_done)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> None:
        if self._cancelled or self._task.done():
            return
        self._cancelled = True
        # Best effort: the remote request may still complete, its result is dropped
        self._task.cancel()

    def _on_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None and not isinstance(error, IdentityServiceError):
            logger.error(f"Unexpected error in identity operation: {error!r}", exc_info=error)
        if self._cancelled or self._callback is None:
            return
        result = Result(error=error) if error is not None else Result(value=task.result())
        try:
            self._callback(result)
        except Exception as e:
            logger.error(f"Completion callback raised: {e}", exc_info=True)

    async def _wait(self) -> Any:
        try:
            return await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if self._cancelled or self._task.cancelled():
                raise Cancelled("Operation was cancelled") from None
            raise

    def __await__(self):
        return self._wait().__await__()


class RequestDispatcher:
    """Single choke point for outbound operations and their cancellation"""

    def __init__(self):
        self._in_flight: Dict[Hashable, Set[Cancelable]] = defaultdict(set)

    def dispatch(
        self,
        operation: Awaitable[Any],
        callback: Optional[Callback] = None,
        key: Hashable = None,
    ) -> Cancelable:
        """
        Schedule an operation and return its handle immediately.

        Args:
            operation: Coroutine performing the work
            callback: Receives the Result once, unless cancelled
            key: Groups handles (e.g. per ThreePid) for cancel_key()
        """
        task = asyncio.ensure_future(operation)
        handle = Cancelable(task, callback, key)
        self._in_flight[key].add(handle)
        task.add_done_callback(lambda _: self._forget(handle))
        return handle

    def _forget(self, handle: Cancelable) -> None:
        handles = self._in_flight.get(handle.key)
        if handles is None:
            return
        handles.discard(handle)
        if not handles:
            del self._in_flight[handle.key]

    def in_flight(self, key: Hashable = None) -> int:
        return len(self._in_flight.get(key, ()))

    def cancel_key(self, key: Hashable) -> int:
        """Cancel every in-flight handle registered under key. Returns the count."""
        handles = list(self._in_flight.get(key, ()))
        for handle in handles:
            handle.cancel()
        if handles:
            logger.debug(f"Cancelled {len(handles)} in-flight operation(s) for {key}")
        return len(handles)

    async def aclose(self) -> None:
        """Cancel everything still in flight and wait for the tasks to unwind"""
        tasks = []
        for handles in list(self._in_flight.values()):
            for handle in list(handles):
                handle.cancel()
                tasks.append(handle._task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()
