"""
Rate-limited work queue
At most one in-flight item per key, duplicate adds collapse, failures back off per key.
"""

import heapq
import itertools
import threading
import time
from collections import deque
from typing import Dict, Hashable, Optional


class WorkQueue:
    """
    A key added while it is being processed is held back until done() is called
    for it, so a key is never handed to two workers at once.
    """

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0, clock=time.monotonic):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._clock = clock
        self._cond = threading.Condition()
        self._queue = deque()
        self._dirty = set()
        self._processing = set()
        self._waiting = []
        self._sequence = itertools.count()
        self._failures: Dict[Hashable, int] = {}
        self._shutting_down = False

    def __len__(self):
        with self._cond:
            return len(self._queue)

    def add(self, key: Hashable) -> None:
        with self._cond:
            self._add_locked(key)

    def _add_locked(self, key):
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def add_after(self, key: Hashable, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            heapq.heappush(self._waiting, (self._clock() + delay, next(self._sequence), key))
            self._cond.notify()

    def when(self, key: Hashable) -> float:
        """Next backoff delay for key; each call counts as one more failure"""
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        return min(self.base_delay * (2 ** failures), self.max_delay)

    def add_rate_limited(self, key: Hashable) -> None:
        self.add_after(key, self.when(key))

    def forget(self, key: Hashable) -> None:
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: Hashable) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    def _promote_waiting_locked(self) -> Optional[float]:
        """Move due delayed keys to the queue; return seconds until the next one"""
        now = self._clock()
        while self._waiting and self._waiting[0][0] <= now:
            _, _, key = heapq.heappop(self._waiting)
            self._add_locked(key)
        if self._waiting:
            return self._waiting[0][0] - now
        return None

    def get(self, timeout: Optional[float] = None) -> Optional[Hashable]:
        """Block until a key is ready; None on shutdown or timeout"""
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                next_due = self._promote_waiting_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    return key
                if self._shutting_down:
                    return None

                wait_for = next_due
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(wait_for)

    def done(self, key: Hashable) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down
