"""Queue-driven background worker thread.

The Local Mapper and the Loop Closer share this loop: wait on a queue with a
timeout so shutdown, reset and pause requests are noticed promptly, process
one item at a time, and never let an exception kill the thread.
"""

from __future__ import annotations

import logging
import queue
import threading
from typing import Any

from .messages import SHUTDOWN

logger = logging.getLogger(__name__)


class BackgroundWorker:
    """Base class for a single consumer thread over a FIFO queue.

    Subclasses implement :meth:`_process` and may override :meth:`_on_reset`.
    Items are processed in arrival order. ``shutdown`` lets the worker finish
    the items already queued, then joins it.
    """

    poll_interval = 0.05

    def __init__(self, name: str) -> None:
        self._name = name
        self._queue: queue.Queue[Any] = queue.Queue()
        self._thread: threading.Thread | None = None
        self._busy = threading.Event()
        self._finished = threading.Event()

        self._reset_requested = threading.Event()
        self._reset_done = threading.Event()

        self._stop_requested = threading.Event()
        self._stopped = threading.Event()

    # Lifecycle

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._finished.clear()
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()
        logger.info("%s started", self._name)

    def shutdown(self, timeout: float | None = None) -> None:
        """Ask the worker to exit after the queued items and wait for it."""
        self.release()
        self._queue.put(SHUTDOWN)
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("%s did not stop within %.1fs", self._name, timeout or 0.0)
            self._thread = None
        self._finished.set()
        logger.info("%s stopped", self._name)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def is_finished(self) -> bool:
        return self._finished.is_set()

    # Queue

    def submit(self, item: Any) -> None:
        self._queue.put(item)

    @property
    def queue_length(self) -> int:
        return self._queue.qsize()

    def has_pending(self) -> bool:
        return not self._queue.empty()

    @property
    def is_busy(self) -> bool:
        return self._busy.is_set()

    # Pause / resume

    def request_stop(self) -> None:
        """Ask the worker to pause between items (non-blocking)."""
        self._stop_requested.set()
        if not self.is_running and not self._busy.is_set():
            self._stopped.set()

    def wait_until_stopped(self, timeout: float) -> bool:
        return self._stopped.wait(timeout)

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    @property
    def is_stopped(self) -> bool:
        return self._stopped.is_set()

    def release(self) -> None:
        """Resume a paused worker."""
        self._stop_requested.clear()
        self._stopped.clear()

    # Reset

    def request_reset(self, timeout: float = 5.0) -> bool:
        """Discard queued items and worker state; waits until acknowledged.

        Returns:
            True if the worker acknowledged within ``timeout``
        """
        if not self.is_running:
            self._do_reset()
            return True
        self._reset_done.clear()
        self._reset_requested.set()
        self._interrupt()
        acknowledged = self._reset_done.wait(timeout)
        if not acknowledged:
            logger.warning("%s did not acknowledge reset within %.1fs", self._name, timeout)
        return acknowledged

    def _do_reset(self) -> None:
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                break
            if item is SHUTDOWN:
                # Keep the shutdown request
                self._queue.put(SHUTDOWN)
                break
        self._on_reset()
        self._reset_requested.clear()
        self._reset_done.set()

    # Processing

    def process_next(self, timeout: float = 0.0) -> bool:
        """Process one queued item on the calling thread.

        Used when the worker thread is not running (tests, offline replay).

        Returns:
            True if an item was processed
        """
        try:
            item = self._queue.get(timeout=timeout) if timeout > 0 else self._queue.get_nowait()
        except queue.Empty:
            return False
        if item is SHUTDOWN:
            return False
        self._handle(item)
        return True

    def drain(self) -> int:
        """Process every queued item on the calling thread."""
        n = 0
        while self.process_next():
            n += 1
        return n

    def _run(self) -> None:
        while True:
            if self._reset_requested.is_set():
                self._do_reset()
                continue
            if self._stop_requested.is_set():
                self._stopped.set()
                self._reset_requested.wait(self.poll_interval)
                continue
            if self._stopped.is_set():
                # Released while the pause was being entered
                self._stopped.clear()

            try:
                item = self._queue.get(timeout=self.poll_interval)
            except queue.Empty:
                continue
            if item is SHUTDOWN:
                break
            self._handle(item)

    def _handle(self, item: Any) -> None:
        self._busy.set()
        try:
            self._process(item)
        except Exception:
            logger.warning(
                "%s failed to process %s; skipping", self._name, _label(item), exc_info=True
            )
        finally:
            self._busy.clear()

    # Hooks

    def _process(self, item: Any) -> None:
        raise NotImplementedError

    def _on_reset(self) -> None:
        """Drop worker-local state after a reset."""

    def _interrupt(self) -> None:
        """Abort long-running work of the current item."""


def _label(item: Any) -> str:
    keyframe_id = getattr(item, "keyframe_id", None)
    if keyframe_id is not None:
        return f"keyframe {keyframe_id}"
    if isinstance(item, int):
        return f"keyframe {item}"
    return type(item).__name__
