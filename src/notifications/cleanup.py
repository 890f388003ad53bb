from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Iterable

from src.config import settings
from src.storage.repository import TokenRepository

logger = logging.getLogger(__name__)


class InvalidTokenCollector:
    """Deactivates tokens that providers reported as permanently dead.

    ``cleanup`` only enqueues; a daemon worker drains the queue. Nothing
    raised while deactivating reaches the dispatch path.
    """

    def __init__(self, repository: TokenRepository | None = None, max_pending: int | None = None) -> None:
        self.repository = repository or TokenRepository()
        self._queue: queue.Queue[list[str]] = queue.Queue(maxsize=max_pending or settings.push_cleanup_queue_size)
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._start_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._start_lock:
            if self.running:
                return
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run_loop,
                name="push-invalid-token-cleanup",
                daemon=True,
            )
            self._thread.start()
        logger.info("Invalid push token collector started", extra={"max_pending": self._queue.maxsize})

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the worker after it has processed what is already queued."""
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        pending = self._queue.qsize()
        if pending:
            logger.warning(
                "Invalid push token collector stopped with unprocessed batches",
                extra={"batches": pending},
            )

    def join(self) -> None:
        """Block until every queued batch has been processed."""
        self._queue.join()

    def cleanup(self, tokens: Iterable[str]) -> None:
        batch = list(dict.fromkeys(t for t in tokens if t))
        if not batch:
            return
        if not self.running:
            self.start()
        try:
            self._queue.put_nowait(batch)
        except queue.Full:
            logger.warning("Invalid push token queue full, dropping batch", extra={"tokens": len(batch)})

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                batch = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue
            self._process(batch)
        while True:
            try:
                batch = self._queue.get_nowait()
            except queue.Empty:
                return
            self._process(batch)

    def _process(self, batch: list[str]) -> None:
        try:
            self._run_once(batch)
        finally:
            self._queue.task_done()

    def _run_once(self, batch: list[str]) -> None:
        try:
            deactivated = self.repository.deactivate_many(batch)
            logger.info(
                "Cleaned up invalid push tokens",
                extra={"reported": len(batch), "deactivated": deactivated},
            )
        except Exception as exc:
            logger.exception("Invalid push token cleanup failed", extra={"error": str(exc), "tokens": len(batch)})
