from __future__ import annotations

import logging
import queue
import threading
from pathlib import Path
from typing import Optional, Tuple


LOGGER = logging.getLogger("analysis_manager.watcher")


class StatusFileWatcher:
    """
    Notice changes to a status file written by an external tool.

    A daemon thread compares the file's size and modification time and only
    enqueues a notification; the poll loop drains the queue and does the parsing.
    """

    def __init__(self, path: Path, interval_seconds: float = 0.5) -> None:
        self._path = Path(path)
        self._interval = interval_seconds
        self._changes: "queue.Queue[Tuple[int, int]]" = queue.Queue()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._last_signature: Optional[Tuple[int, int]] = None

    @property
    def path(self) -> Path:
        return self._path

    def start(self) -> "StatusFileWatcher":
        if self._thread is None:
            self._thread = threading.Thread(target=self._watch, name=f"watch-{self._path.name}", daemon=True)
            self._thread.start()
        return self

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self._interval * 4)
            self._thread = None

    def drain(self) -> int:
        """Return how many change notifications arrived since the last call."""
        count = 0
        while True:
            try:
                self._changes.get_nowait()
            except queue.Empty:
                return count
            count += 1

    def __enter__(self) -> "StatusFileWatcher":
        return self.start()

    def __exit__(self, *_exc) -> None:
        self.stop()

    def _watch(self) -> None:
        self._check()
        while not self._stop.wait(self._interval):
            self._check()

    def _check(self) -> None:
        try:
            stat = self._path.stat()
        except FileNotFoundError:
            return
        except OSError as exc:
            LOGGER.debug("Unable to stat %s: %s", self._path, exc)
            return
        signature = (stat.st_size, stat.st_mtime_ns)
        if signature != self._last_signature:
            self._last_signature = signature
            self._changes.put(signature)
