from collections import deque
from collections.abc import Callable, Hashable
import heapq
import itertools
import threading
import time
from typing import Generic, TypeVar

T = TypeVar("T", bound=Hashable)


class WorkQueue(Generic[T]):
    """
    A work queue for keys of objects to reconcile.

    * An item that is added while it is already waiting in the queue is only processed once.
    * An item is never handed out to two workers at the same time. If it is added again while a worker processes it,
      it is queued again once the worker calls [done()].
    * Items can be added with a delay, and with a per-item exponential delay for failures ([add_rate_limited()]).
    """

    def __init__(
        self,
        base_delay: float = 0.005,
        max_delay: float = 1000.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Args:
            base_delay: The delay in seconds after the first failure of an item.
            max_delay: The maximum delay in seconds for [add_rate_limited()].
            clock: A monotonic clock. The queue waits on a [threading.Condition], so this should only be replaced
                to make delays deterministic in tests.
        """

        self.base_delay = base_delay
        self.max_delay = max_delay
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: deque[T] = deque()
        self._dirty: set[T] = set()
        self._processing: set[T] = set()
        self._waiting: list[tuple[float, int, T]] = []
        self._counter = itertools.count()
        self._failures: dict[T, int] = {}
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def add(self, item: T) -> None:
        with self._cond:
            self._add(item)

    def add_after(self, item: T, delay: float) -> None:
        """
        Add *item* after *delay* seconds. If the item is added again before that, the earlier of the two wins.
        """

        with self._cond:
            if self._shutting_down:
                return
            if delay <= 0:
                self._add(item)
                return
            heapq.heappush(self._waiting, (self._clock() + delay, next(self._counter), item))
            self._cond.notify()

    def add_rate_limited(self, item: T) -> None:
        """
        Add *item* after a delay that doubles with every call until [forget()] is called for it.
        """

        with self._cond:
            failures = self._failures.get(item, 0)
            self._failures[item] = failures + 1
        self.add_after(item, min(self.base_delay * 2**failures, self.max_delay))

    def forget(self, item: T) -> None:
        """
        Reset the failure count of *item*.
        """

        with self._cond:
            self._failures.pop(item, None)

    def num_requeues(self, item: T) -> int:
        with self._cond:
            return self._failures.get(item, 0)

    def get(self, timeout: float | None = None) -> T | None:
        """
        Block until an item is available and return it. The caller must call [done()] with the item when it finished
        processing it.

        Returns `None` if the queue is shutting down, or if *timeout* seconds passed without an item.
        """

        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                self._promote_ready()
                if self._queue:
                    item = self._queue.popleft()
                    self._dirty.discard(item)
                    self._processing.add(item)
                    return item
                if self._shutting_down:
                    return None

                wait: float | None = None
                if self._waiting:
                    wait = max(self._waiting[0][0] - self._clock(), 0.0)
                if deadline is not None:
                    left = deadline - self._clock()
                    if left <= 0:
                        return None
                    wait = left if wait is None else min(wait, left)
                self._cond.wait(wait)

    def done(self, item: T) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def shutdown(self) -> None:
        """
        Stop handing out items. Workers blocked in [get()] return `None`.
        """

        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    def _add(self, item: T) -> None:
        if self._shutting_down or item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.append(item)
        self._cond.notify()

    def _promote_ready(self) -> None:
        now = self._clock()
        while self._waiting and self._waiting[0][0] <= now:
            _, _, item = heapq.heappop(self._waiting)
            self._add(item)
