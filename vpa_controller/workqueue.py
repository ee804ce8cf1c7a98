"""Work queue that serializes reconciliation per object key."""

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from typing import Callable, Dict, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)


class WorkQueue:
    """
    Thread-safe queue of ``namespace/name`` keys.

    A key is queued at most once, and a key handed out by ``get`` is not
    handed out again until ``done`` is called for it. Re-adding a key while
    it is being processed queues it again once processing finishes.
    Failed keys are retried with exponential backoff via ``add_rate_limited``.
    """

    def __init__(
        self,
        base_delay: float = 0.5,
        max_delay: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the queue.

        Args:
            base_delay: Delay in seconds before the first retry of a key
            max_delay: Cap on the retry delay in seconds
            clock: Monotonic time source
        """
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._clock = clock

        self._cond = threading.Condition()
        self._queue: deque = deque()
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._waiting: List[Tuple[float, int, str]] = []
        self._seq = itertools.count()
        self._failures: Dict[str, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _add_locked(self, key: str) -> None:
        if key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._cond.notify()

    def _promote_ready_locked(self) -> None:
        now = self._clock()
        while self._waiting and self._waiting[0][0] <= now:
            _, _, key = heapq.heappop(self._waiting)
            self._add_locked(key)

    def add(self, key: str) -> None:
        """Queue a key for processing."""
        with self._cond:
            if self._shutting_down:
                return
            self._add_locked(key)

    def add_after(self, key: str, delay: float) -> None:
        """Queue a key once ``delay`` seconds have passed."""
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            heapq.heappush(self._waiting, (self._clock() + delay, next(self._seq), key))
            self._cond.notify()

    def add_rate_limited(self, key: str) -> float:
        """
        Requeue a failed key with exponential backoff.

        Returns:
            The delay applied, in seconds
        """
        with self._cond:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1
        delay = min(self.base_delay * (2 ** failures), self.max_delay)
        logger.debug(f"Requeueing {key} in {delay:.2f}s (attempt {failures + 1})")
        self.add_after(key, delay)
        return delay

    def forget(self, key: str) -> None:
        """Reset the backoff of a key after it succeeded."""
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        """Return how many times a key was requeued since it last succeeded."""
        with self._cond:
            return self._failures.get(key, 0)

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """
        Take the next key, blocking until one is ready.

        Args:
            timeout: Maximum seconds to wait (None waits indefinitely)

        Returns:
            The key, or None on timeout or shutdown
        """
        with self._cond:
            end = None if timeout is None else self._clock() + timeout
            while True:
                self._promote_ready_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    return key
                if self._shutting_down:
                    return None

                wait = None
                if self._waiting:
                    wait = max(self._waiting[0][0] - self._clock(), 0)
                if end is not None:
                    remaining = end - self._clock()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: str) -> None:
        """Mark a key returned by ``get`` as finished."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shut_down(self) -> None:
        """Stop accepting keys and wake all waiting workers."""
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down
