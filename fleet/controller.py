from __future__ import annotations

import heapq
import time
from collections import deque
from threading import Condition, Event, Lock, Thread, current_thread
from typing import Any

from .db import Store
from .mapper import map_node_to_sets, map_unit_to_sets
from .models import NODE_KIND, SET_KIND, UNIT_KIND, SetKey, controller_ref_of, key_of
from .reconciler import Reconciler, Result
from .settings import settings


class WorkQueue:
    """De-duplicating queue of set keys.

    A key added while it is already queued is dropped; a key added while a
    worker holds it is queued again once the worker calls done(). So one key
    is never reconciled by two workers at the same time.
    """

    def __init__(self) -> None:
        self._cond = Condition()
        self._queue: deque[SetKey] = deque()
        self._dirty: set[SetKey] = set()
        self._processing: set[SetKey] = set()
        self._delayed: list[tuple[float, int, SetKey]] = []
        self._seq = 0
        self._shutdown = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def _push(self, key: SetKey) -> None:
        if key in self._dirty:
            return
        self._dirty.add(key)
        if key not in self._processing:
            self._queue.append(key)
            self._cond.notify()

    def add(self, key: SetKey) -> None:
        with self._cond:
            if self._shutdown:
                return
            self._push(key)

    def add_after(self, key: SetKey, delay_s: float) -> None:
        if delay_s <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutdown:
                return
            self._seq += 1
            heapq.heappush(self._delayed, (time.monotonic() + delay_s, self._seq, key))
            self._cond.notify()

    def _promote_due(self) -> None:
        now = time.monotonic()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, key = heapq.heappop(self._delayed)
            self._push(key)

    def get(self, timeout: float | None = None) -> SetKey | None:
        """Next key to work on, or None on timeout or shutdown."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                self._promote_due()
                if self._queue:
                    key = self._queue.popleft()
                    self._dirty.discard(key)
                    self._processing.add(key)
                    return key
                if self._shutdown:
                    return None
                wait: float | None = None
                if self._delayed:
                    wait = max(0.0, self._delayed[0][0] - time.monotonic())
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: SetKey) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()


class Controller:
    """Feeds set keys from store events and periodic resyncs to the reconciler.

    Workers run in daemon threads. Retryable failures are requeued with
    exponential backoff per key; a successful cycle resets the backoff.
    """

    def __init__(
        self,
        store: Store,
        reconciler: Reconciler | None = None,
        workers: int | None = None,
        resync_interval_s: float | None = None,
    ):
        self.store = store
        self.reconciler = reconciler or Reconciler(store, store)
        self.queue = WorkQueue()
        self.workers = max(1, int(workers or settings.workers))
        self.resync_interval_s = max(1.0, float(resync_interval_s or settings.resync_interval_s))
        self._failures: dict[SetKey, int] = {}
        self._lock = Lock()
        self._stop = Event()
        self._threads: list[Thread] = []
        store.subscribe(self.on_event)

    def start(self) -> None:
        if any(t.is_alive() for t in self._threads):
            return
        self.store.log_event("INFO", "Controller started")
        self.resync()
        self._threads = [Thread(target=self._worker, daemon=True) for _ in range(self.workers)]
        self._threads.append(Thread(target=self._resync_loop, daemon=True))
        for t in self._threads:
            t.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Stop workers and wait for them to exit.

        The queue is shut down, so a stopped controller is not restarted.
        """
        self._stop.set()
        self.queue.shutdown()
        for t in self._threads:
            if t is not current_thread():
                t.join(timeout)

    def enqueue(self, key: SetKey) -> None:
        self.queue.add(key)

    def resync(self) -> None:
        for s in self.store.list(SET_KIND):
            self.enqueue(key_of(s))

    def on_event(self, kind: str, event_type: str, obj: Any) -> None:
        if kind == SET_KIND:
            self.enqueue(key_of(obj))
        elif kind == UNIT_KIND:
            owner = controller_ref_of(obj)
            if owner is not None and owner.kind == SET_KIND:
                self.enqueue(SetKey(obj.metadata.namespace, owner.name))
                return
            for key in map_unit_to_sets(self.store, obj) or []:
                self.enqueue(key)
        elif kind == NODE_KIND:
            for key in map_node_to_sets(self.store, obj):
                self.enqueue(key)

    def backoff_delay(self, key: SetKey) -> float:
        with self._lock:
            n = self._failures.get(key, 0)
            self._failures[key] = n + 1
        return float(min(settings.requeue_base_delay_s * (2**n), settings.requeue_max_delay_s))

    def process_next(self, timeout: float | None = None) -> bool:
        """Reconcile one key. Returns False if nothing was available."""
        key = self.queue.get(timeout)
        if key is None:
            return False
        try:
            try:
                result = self.reconciler.reconcile(key)
            except Exception as e:
                self.store.log_event(
                    "ERROR", f"Reconcile crashed: {type(e).__name__}: {e}", namespace=key.namespace, set_name=key.name
                )
                result = Result(requeue=True, error=e)
            self._handle(key, result)
        finally:
            self.queue.done(key)
        return True

    def _handle(self, key: SetKey, result: Result) -> None:
        if result.requeue:
            self.queue.add_after(key, self.backoff_delay(key))
            return
        with self._lock:
            self._failures.pop(key, None)
        if result.requeue_after:
            self.queue.add_after(key, result.requeue_after)

    def _worker(self) -> None:
        while not self._stop.is_set():
            self.process_next(timeout=1.0)

    def _resync_loop(self) -> None:
        while not self._stop.wait(self.resync_interval_s):
            try:
                self.resync()
            except Exception as e:
                self.store.log_event("ERROR", f"Resync failed: {type(e).__name__}: {e}")
