from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable
from typing import Protocol

from converge.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class QueueShutDown(Exception):
    """Raised by :meth:`WorkQueue.get` once the queue has been shut down."""


class RateLimiter(Protocol):
    def when(self, item: Hashable) -> float: ...

    def forget(self, item: Hashable) -> None: ...

    def num_requeues(self, item: Hashable) -> int: ...


class ExponentialFailureRateLimiter:
    """Per-item exponential backoff: ``base_delay * 2**failures``, capped at ``max_delay``.

    The defaults (5 ms doubling, capped at 1000 s) reach the cap after about
    eighteen consecutive failures.  :meth:`forget` resets an item to zero.
    """

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0) -> None:
        if base_delay <= 0:
            raise ValueError("base_delay must be > 0")
        if max_delay < base_delay:
            raise ValueError("max_delay must be >= base_delay")
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            exponent = self._failures.get(item, 0)
            self._failures[item] = exponent + 1
        if exponent >= 64:
            return self.max_delay
        return min(self.max_delay, self.base_delay * (2**exponent))

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class BucketRateLimiter:
    """Token bucket shared by all items, bounding the overall retry rate."""

    def __init__(
        self,
        qps: float = 10.0,
        burst: int = 100,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if qps <= 0:
            raise ValueError("qps must be > 0")
        if burst < 1:
            raise ValueError("burst must be >= 1")
        self.qps = qps
        self.burst = burst
        self._clock = clock
        self._tokens = float(burst)
        self._last = clock()
        self._lock = threading.Lock()

    def when(self, item: Hashable) -> float:
        with self._lock:
            now = self._clock()
            self._tokens = min(float(self.burst), self._tokens + (now - self._last) * self.qps)
            self._last = now
            self._tokens -= 1.0
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def forget(self, item: Hashable) -> None:
        return None

    def num_requeues(self, item: Hashable) -> int:
        return 0


class MaxOfRateLimiter:
    """Combine limiters by taking the longest delay any of them asks for."""

    def __init__(self, *limiters: RateLimiter) -> None:
        if not limiters:
            raise ValueError("at least one rate limiter is required")
        self.limiters = limiters

    def when(self, item: Hashable) -> float:
        return max(limiter.when(item) for limiter in self.limiters)

    def forget(self, item: Hashable) -> None:
        for limiter in self.limiters:
            limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return max(limiter.num_requeues(item) for limiter in self.limiters)


def default_controller_rate_limiter(
    base_delay: float = 0.005,
    max_delay: float = 1000.0,
    qps: float = 10.0,
    burst: int = 100,
) -> MaxOfRateLimiter:
    """Per-key exponential backoff combined with an overall token bucket."""
    return MaxOfRateLimiter(
        ExponentialFailureRateLimiter(base_delay=base_delay, max_delay=max_delay),
        BucketRateLimiter(qps=qps, burst=burst),
    )


class WorkQueue:
    """Deduplicating FIFO of reconcile keys with single-flight processing.

    Bookkeeping:
        ``_queue``
            Keys waiting to be handed out, each at most once.
        ``_dirty``
            Keys that need processing, whether queued or waiting for an
            in-flight run to finish.
        ``_processing``
            Keys handed out by :meth:`get` and not yet passed to :meth:`done`.

    Adding a queued key is a no-op.  Adding an in-flight key marks it dirty and
    it is queued again as soon as :meth:`done` is called, so per key there is at
    most one run in flight and one pending.
    """

    def __init__(self, name: str = "default") -> None:
        self.name = name
        self._cond = threading.Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._shutting_down = False
        METRICS.queue_depth.labels(queue=name).set(0)

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    @property
    def in_flight(self) -> int:
        with self._cond:
            return len(self._processing)

    def _update_depth(self) -> None:
        METRICS.queue_depth.labels(queue=self.name).set(len(self._queue))

    def add(self, item: Hashable) -> bool:
        """Mark *item* as needing work.  Returns False when the call was a no-op."""
        with self._cond:
            if self._shutting_down:
                return False
            if item in self._dirty:
                return False
            self._dirty.add(item)
            METRICS.queue_adds_total.labels(queue=self.name).inc()
            if item in self._processing:
                return True
            self._queue.append(item)
            self._update_depth()
            self._cond.notify_all()
            return True

    def get(self, timeout: float | None = None) -> Hashable | None:
        """Block until an item is available and mark it in flight.

        Returns ``None`` if *timeout* elapses first.  Raises
        :class:`QueueShutDown` once :meth:`shutdown` has been called, even if
        items are still queued.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while not self._queue and not self._shutting_down:
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(timeout=remaining)
            if self._shutting_down:
                raise QueueShutDown(self.name)
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            self._update_depth()
            return item

    def done(self, item: Hashable) -> None:
        """Finish processing *item*, re-queueing it if it was added meanwhile."""
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty and not self._shutting_down:
                self._queue.append(item)
                self._update_depth()
            self._cond.notify_all()

    def shutdown(self) -> None:
        """Stop accepting adds and stop handing out work.  In-flight items may still finish."""
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def wait_for_in_flight(self, timeout: float | None = None) -> bool:
        """Wait until no item is in flight.  Returns False if *timeout* elapsed first."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while self._processing:
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._cond.wait(timeout=remaining)
            return True


class RateLimitingQueue(WorkQueue):
    """A :class:`WorkQueue` with delayed adds and per-key retry backoff."""

    def __init__(self, rate_limiter: RateLimiter | None = None, name: str = "default") -> None:
        super().__init__(name=name)
        self.rate_limiter = rate_limiter or default_controller_rate_limiter()
        self._timer_cond = threading.Condition()
        self._waiting: dict[Hashable, float] = {}
        self._heap: list[tuple[float, int, Hashable]] = []
        self._sequence = itertools.count()
        self._timer_thread: threading.Thread | None = None

    def add_after(self, item: Hashable, delay: float) -> None:
        """Add *item* once *delay* seconds have passed.  The earliest pending deadline wins."""
        if self.shutting_down:
            return
        if delay <= 0:
            self.add(item)
            return
        due_at = time.monotonic() + delay
        with self._timer_cond:
            existing = self._waiting.get(item)
            if existing is not None and existing <= due_at:
                return
            self._waiting[item] = due_at
            heapq.heappush(self._heap, (due_at, next(self._sequence), item))
            if self._timer_thread is None:
                self._timer_thread = threading.Thread(
                    target=self._run_timer, name=f"workqueue-{self.name}-timer", daemon=True
                )
                self._timer_thread.start()
            self._timer_cond.notify_all()

    def _run_timer(self) -> None:
        while True:
            ready: list[Hashable] = []
            with self._timer_cond:
                while not ready:
                    if self.shutting_down:
                        return
                    if not self._heap:
                        self._timer_cond.wait()
                        continue
                    due_at, _, item = self._heap[0]
                    if self._waiting.get(item) != due_at:
                        heapq.heappop(self._heap)
                        continue
                    now = time.monotonic()
                    if due_at > now:
                        self._timer_cond.wait(timeout=due_at - now)
                        continue
                    while self._heap and self._heap[0][0] <= now:
                        due_at, _, item = heapq.heappop(self._heap)
                        if self._waiting.get(item) == due_at:
                            del self._waiting[item]
                            ready.append(item)
            for item in ready:
                self.add(item)

    def add_rate_limited(self, item: Hashable) -> None:
        delay = self.rate_limiter.when(item)
        METRICS.queue_retries_total.labels(queue=self.name).inc()
        METRICS.queue_item_requeues.labels(queue=self.name).observe(
            self.rate_limiter.num_requeues(item)
        )
        LOGGER.debug("Requeueing %s on %s in %.3fs", item, self.name, delay)
        self.add_after(item, delay)

    def forget(self, item: Hashable) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)

    def shutdown(self) -> None:
        super().shutdown()
        with self._timer_cond:
            self._waiting.clear()
            self._heap.clear()
            self._timer_cond.notify_all()
