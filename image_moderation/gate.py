from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from .config import get_max_concurrent_calls


class CallGate:
    """
    Counting semaphore around outbound vision calls, with a probe for tests/metrics.

    `in_flight` is the number of held slots, `peak` the highest value it reached,
    `total_calls` the number of slots ever granted.
    """

    def __init__(self, limit: int):
        if limit < 1:
            raise ValueError(f"CallGate limit must be >= 1, got {limit}")
        self.limit = limit
        self._sem = threading.BoundedSemaphore(limit)
        self._probe_lock = threading.Lock()
        self.in_flight = 0
        self.peak = 0
        self.total_calls = 0

    def acquire(self, timeout: Optional[float] = None) -> bool:
        if timeout is not None and timeout <= 0:
            ok = self._sem.acquire(blocking=False)
        else:
            ok = self._sem.acquire(timeout=timeout)
        if ok:
            with self._probe_lock:
                self.in_flight += 1
                self.total_calls += 1
                self.peak = max(self.peak, self.in_flight)
        return ok

    def release(self) -> None:
        with self._probe_lock:
            self.in_flight -= 1
        self._sem.release()

    @contextmanager
    def slot(self, timeout: Optional[float] = None) -> Iterator[bool]:
        """Yields True while holding a slot, False if none was free before `timeout`."""
        acquired = self.acquire(timeout)
        try:
            yield acquired
        finally:
            if acquired:
                self.release()


_VISION_GATE: Optional[CallGate] = None
_VISION_GATE_LOCK = threading.Lock()


def get_vision_gate() -> CallGate:
    """Process-wide gate shared by every VisionAnalysisClient that isn't given its own."""
    global _VISION_GATE
    with _VISION_GATE_LOCK:
        if _VISION_GATE is None:
            _VISION_GATE = CallGate(get_max_concurrent_calls())
        return _VISION_GATE
