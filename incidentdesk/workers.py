from __future__ import annotations
import itertools
import logging
from typing import Any, Callable, Dict, Optional

from PySide6 import QtCore

logger = logging.getLogger(__name__)

Callback = Callable[[Any, Optional[BaseException]], None]


class _TaskRunnable(QtCore.QRunnable):
    """Runs one blocking job on a pool thread and reports back by signal."""
    def __init__(self, task_id: int, fn: Callable[[], Any], done: QtCore.SignalInstance):
        super().__init__()
        self._task_id = task_id
        self._fn = fn
        self._done = done
        self.setAutoDelete(True)

    def run(self):
        try:
            result = self._fn()
        except Exception as e:
            logger.exception("[Worker] Background task %d failed", self._task_id)
            self._done.emit(self._task_id, None, e)
            return
        self._done.emit(self._task_id, result, None)


class TaskRunner(QtCore.QObject):
    """
    Off-loads blocking I/O (classifier, alerts, cloud reset) to the global
    thread pool. Callbacks always run on the thread that owns the runner,
    so the coordinator only ever mutates state from the GUI thread.
    """

    _finished = QtCore.Signal(int, object, object)   # task_id, result, error

    def __init__(self, pool: Optional[QtCore.QThreadPool] = None):
        super().__init__()
        self._pool = pool or QtCore.QThreadPool.globalInstance()
        self._ids = itertools.count(1)
        self._callbacks: Dict[int, Callback] = {}
        self._finished.connect(self._on_finished, QtCore.Qt.QueuedConnection)

    def submit(self, fn: Callable[[], Any], callback: Optional[Callback] = None) -> None:
        task_id = next(self._ids)
        if callback is not None:
            self._callbacks[task_id] = callback
        self._pool.start(_TaskRunnable(task_id, fn, self._finished))

    @property
    def pending(self) -> int:
        return len(self._callbacks)

    @QtCore.Slot(int, object, object)
    def _on_finished(self, task_id: int, result: Any, error: Optional[BaseException]) -> None:
        cb = self._callbacks.pop(task_id, None)
        if cb is not None:
            cb(result, error)


class InlineRunner:
    """Runs jobs synchronously. Used by the CLI subcommands and tests."""

    def submit(self, fn: Callable[[], Any], callback: Optional[Callback] = None) -> None:
        try:
            result = fn()
        except Exception as e:
            logger.exception("[Worker] Inline task failed")
            if callback is not None:
                callback(None, e)
            return
        if callback is not None:
            callback(result, None)
