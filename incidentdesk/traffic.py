from __future__ import annotations
import logging
from collections import deque
from typing import Callable, Deque, List, Optional

from .models import StrikeQueueEntry, DispatchResult, source_value

logger = logging.getLogger(__name__)


class StrikeTrafficController:
    """
    Serializes strike requests so at most one incident is busy at a time.

    request() dispatches immediately only when the system is free and nothing
    is already waiting; otherwise the request joins the FIFO tail. poll() is
    driven by the coordinator tick: once the system has been continuously free
    for settle_delay seconds the head of the queue is dispatched.

    Requests are never dropped and never reordered.
    """

    def __init__(self,
                 settle_delay: float,
                 is_busy: Callable[[], bool],
                 dispatch: Callable[[StrikeQueueEntry, float], None],
                 on_change: Optional[Callable[[int], None]] = None):
        self.settle_delay = settle_delay
        self._is_busy = is_busy
        self._dispatch = dispatch
        self._on_change = on_change
        self._queue: Deque[StrikeQueueEntry] = deque()
        self._free_since: Optional[float] = None

    @property
    def depth(self) -> int:
        return len(self._queue)

    @property
    def entries(self) -> List[StrikeQueueEntry]:
        return list(self._queue)

    def request(self, source, now: float) -> DispatchResult:
        entry = StrikeQueueEntry(enqueued_at=now, source=source_value(source))
        busy = self._is_busy()
        if busy or self._queue:
            if busy:
                self._free_since = None
            self._queue.append(entry)
            logger.info("[Traffic] Busy; queued %s (depth=%d)", entry.source, len(self._queue))
            self._changed()
            return DispatchResult(dispatched=False, depth=len(self._queue), entry=entry)

        logger.info("[Traffic] Dispatching %s", entry.source)
        self._free_since = None
        self._dispatch(entry, now)
        return DispatchResult(dispatched=True, depth=0, entry=entry)

    def poll(self, now: float) -> Optional[StrikeQueueEntry]:
        """Dispatch the queue head if the settle window has elapsed."""
        if self._is_busy():
            self._free_since = None
            return None
        if self._free_since is None:
            self._free_since = now
        if not self._queue:
            return None
        if now - self._free_since < self.settle_delay:
            return None

        entry = self._queue.popleft()
        self._free_since = None
        logger.info("[Traffic] Settle window elapsed; dispatching queued %s (waited %.0fs, depth=%d)",
                    entry.source, now - entry.enqueued_at, len(self._queue))
        self._changed()
        self._dispatch(entry, now)
        return entry

    def clear(self) -> None:
        if self._queue:
            self._queue.clear()
            self._changed()

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change(len(self._queue))
