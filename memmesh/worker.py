"""
Background Worker - Runs relation discovery after the caller has moved on.

Owns one daemon thread with its own event loop. Submitted coroutines run
there; their failures are logged and kept on the worker's `errors` channel
and never reach whoever submitted them.
"""

import asyncio
import threading
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime
from typing import Coroutine, Optional

from memmesh.log import get_logger
from memmesh.models import utcnow

logger = get_logger("memmesh.worker")


@dataclass
class TaskFailure:
    """One background task that raised."""
    name: str
    error: BaseException
    failed_at: datetime = field(default_factory=utcnow)


class BackgroundWorker:
    """
    Fire-and-forget executor.

    Usage:
        worker = BackgroundWorker()
        worker.start()
        worker.submit(mesh.discover_and_persist_relations("m1", "u1"), name="relations:m1")
        worker.stop()
    """

    def __init__(self, max_errors: int = 100):
        self.errors: deque[TaskFailure] = deque(maxlen=max_errors)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._pending: set[Future] = set()
        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._ready = threading.Event()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the worker thread (idempotent)."""
        if self.running:
            return
        self._ready.clear()
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="memmesh-worker",
            daemon=True,
        )
        self._thread.start()
        self._ready.wait()
        logger.info("Background worker started")

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.call_soon(self._ready.set)
        self._loop.run_forever()

    def submit(self, coro: Coroutine, name: str = "task") -> Future:
        """Schedule a coroutine on the worker loop and return its future.

        The future's result is available to callers that want it, but
        nothing forces them to wait.
        """
        if not self.running:
            self.start()
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(lambda f: self._on_done(f, name))
        return future

    def _on_done(self, future: Future, name: str) -> None:
        if future.cancelled():
            logger.debug(f"Background task {name} cancelled")
        else:
            error = future.exception()
            if error is not None:
                logger.error(f"Background task {name} failed: {error}", exc_info=error)
                self.errors.append(TaskFailure(name, error))
        # Record the failure before the task stops counting as pending
        with self._idle:
            self._pending.discard(future)
            if not self._pending:
                self._idle.notify_all()

    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until nothing is pending. Returns False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._pending, timeout=timeout)

    def stop(self, timeout: float = 10.0) -> None:
        """Wait for in-flight tasks, then shut the loop down."""
        if not self.running:
            return
        if not self.drain(timeout):
            logger.warning(f"Background worker stopping with {self.pending()} tasks still running")
            with self._lock:
                stuck = list(self._pending)
            # cancel() runs done callbacks inline, and they take the lock
            for future in stuck:
                future.cancel()
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=timeout)
        self._loop.close()
        self._thread = None
        self._loop = None
        logger.info("Background worker stopped")
