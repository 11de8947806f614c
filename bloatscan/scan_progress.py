"""Progress events, throttling and cooperative cancellation."""

from __future__ import annotations

import dataclasses
import queue
import threading
import time
from typing import Any, Callable

from bloatscan.scan_config import PROGRESS_EVERY, PROGRESS_INTERVAL_SEC
from bloatscan.scan_errors import ScanCancelledError


@dataclasses.dataclass(slots=True, frozen=True)
class ScanProgress:
    entries_processed: int
    current_path: str
    phase: str = "walking"

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": "scan_progress",
            "entries_processed": self.entries_processed,
            "current_path": self.current_path,
            "phase": self.phase,
        }


ProgressCallback = Callable[[ScanProgress], None]


class CancellationToken:
    """Cooperative cancellation signal checked by workers between entries."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, context: str = "scan") -> None:
        if self._event.is_set():
            raise ScanCancelledError(f"{context} cancelled")


class ProgressChannel:
    """Bounded queue of progress events for polling consumers.

    Publishing never blocks the scan: when the queue is full the oldest event
    is dropped. Instances are callable, so a channel can be passed anywhere a
    progress callback is accepted.
    """

    def __init__(self, maxsize: int = 100):
        self._queue: queue.Queue[ScanProgress] = queue.Queue(maxsize=maxsize)
        self._lock = threading.Lock()
        self.dropped = 0

    def publish(self, event: ScanProgress) -> None:
        with self._lock:
            try:
                self._queue.put_nowait(event)
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass
                self._queue.put_nowait(event)

    __call__ = publish

    def poll(self, timeout: float | None = None) -> ScanProgress | None:
        try:
            if timeout is None:
                return self._queue.get_nowait()
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[ScanProgress]:
        events: list[ScanProgress] = []
        while True:
            item = self.poll()
            if item is None:
                return events
            events.append(item)


class ProgressThrottle:
    """Forwards a progress event every N entries or every interval, whichever comes first."""

    def __init__(
        self,
        callback: ProgressCallback | None,
        phase: str,
        every: int = PROGRESS_EVERY,
        interval_sec: float = PROGRESS_INTERVAL_SEC,
    ):
        self.callback = callback
        self.phase = phase
        self.every = every
        self.interval_sec = interval_sec
        self.count = 0
        self._last_count = 0
        self._last_ts = time.monotonic()

    def tick(self, current_path: str) -> None:
        self.count += 1
        if self.callback is None:
            return
        now = time.monotonic()
        if self.count - self._last_count >= self.every or now - self._last_ts >= self.interval_sec:
            self._emit(current_path, now)

    def finish(self, current_path: str = "") -> None:
        if self.callback is not None:
            self.callback(ScanProgress(self.count, current_path, f"{self.phase}_done"))

    def _emit(self, current_path: str, now: float) -> None:
        self._last_count = self.count
        self._last_ts = now
        self.callback(ScanProgress(self.count, current_path, self.phase))
