"""Cooperative cancellation: in-process tokens and the flag watcher that trips them."""

import logging
import threading
from collections.abc import Callable
from pathlib import Path

from issue_orchestrator.core import tasks as tasks_mod
from issue_orchestrator.db.engine import get_db

logger = logging.getLogger(__name__)


class TaskCancelled(Exception):
    """Raised when a task stops because its cancellation token was triggered."""


class CancellationToken:
    """A one-shot signal that suspending operations watch for."""

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self):
        """Trigger the token and run registered callbacks once."""
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancellation callback failed")

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Run callback on cancel (immediately if already cancelled).

        Returns a function that unregisters the callback.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def remove():
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return remove
        callback()
        return lambda: None

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise TaskCancelled("Task cancelled")

    def wait(self, timeout: float | None = None) -> bool:
        return self._event.wait(timeout)


class CancelWatcher:
    """Background thread that polls a task's cancellation flag and trips its token."""

    def __init__(
        self,
        db_path: Path,
        issue_key: str,
        token: CancellationToken,
        poll_interval: float = 2.0,
    ):
        self.db_path = db_path
        self.issue_key = issue_key
        self.token = token
        self.poll_interval = poll_interval
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self):
        """Start the watcher thread."""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name=f"cancel-watcher-{self.issue_key}", daemon=True
        )
        self._thread.start()

    def stop(self):
        """Signal the watcher thread to stop."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)

    def _run(self):
        while not self._stop_event.is_set():
            try:
                if self._check():
                    logger.info("Cancellation requested for %s", self.issue_key)
                    self.token.cancel()
                    return
            except Exception:
                logger.exception("Error polling cancellation flag for %s", self.issue_key)
            self._stop_event.wait(self.poll_interval)

    def _check(self) -> bool:
        with get_db(self.db_path) as db:
            return tasks_mod.is_cancel_requested(db, self.issue_key)
