# timeline/clock.py
import heapq
import itertools
import threading
import time
from typing import Callable, List, Optional, Tuple


class MonotonicClock:
    """Wall clock in milliseconds. `wait` blocks on a Condition or Event."""

    def now(self) -> float:
        return time.perf_counter() * 1000.0

    def wait(self, waitable, timeout_ms: Optional[float]) -> bool:
        if timeout_ms is None:
            return waitable.wait()
        return waitable.wait(max(0.0, timeout_ms) / 1000.0)


class VirtualClock:
    """Idealized clock: waiting jumps virtual time forward instead of blocking.

    Actions registered with `call_at` run when virtual time reaches them, on
    whichever thread is waiting at that point. A wait with no timeout and no
    pending action would never return, so it raises instead.
    """
    def __init__(self, start_ms: float = 0.0):
        self._now = float(start_ms)
        self._actions: List[Tuple[float, int, Callable[[], None]]] = []
        self._seq = itertools.count()
        self._lock = threading.RLock()

    def now(self) -> float:
        with self._lock:
            return self._now

    def call_at(self, at_ms: float, fn: Callable[[], None]):
        with self._lock:
            heapq.heappush(self._actions, (float(at_ms), next(self._seq), fn))

    def advance(self, ms: float):
        with self._lock:
            self._now += max(0.0, ms)

    def wait(self, waitable, timeout_ms: Optional[float]) -> bool:
        with self._lock:
            deadline = None if timeout_ms is None else self._now + max(0.0, timeout_ms)
            due: List[Callable[[], None]] = []
            if self._actions and (deadline is None or self._actions[0][0] <= deadline):
                at = self._actions[0][0]
                self._now = max(self._now, at)
                while self._actions and self._actions[0][0] <= at:
                    due.append(heapq.heappop(self._actions)[2])
            elif deadline is None:
                raise RuntimeError("VirtualClock: wait without timeout and nothing scheduled")
            else:
                self._now = deadline
        for fn in due:
            fn()
        return bool(due)
