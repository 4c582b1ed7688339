"""
Bounded rule workers, per-target write locks, and call timeouts.

Rules inside one template address independent targets, so capture and
restore fan them out over a small thread pool. Two rules that resolve
to the same physical target still write one at a time.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional, Sequence, TypeVar

from .errors import RuleTimeoutError

logger = logging.getLogger("melody.concurrency")

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_WORKERS = 4


class ReadWriteLock:
    """Many concurrent readers or one writer.

    Writers are preferred: once a writer is waiting, new readers queue
    behind it so ``clear`` cannot starve under steady encryption load.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class PathLocks:
    """One lock per normalized physical target.

    Windows paths and registry keys are case-insensitive, so keys are
    case-folded and separators unified before lookup.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    @staticmethod
    def normalize(target: str) -> str:
        return target.replace("/", "\\").rstrip("\\").casefold()

    def lock_for(self, target: str) -> threading.Lock:
        key = self.normalize(target)
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, target: str) -> Iterator[None]:
        lock = self.lock_for(target)
        with lock:
            yield

    def acquire(self, target: str, timeout: Optional[float] = None) -> threading.Lock:
        """Take the lock for ``target`` and return it; the caller releases.

        Raises:
            RuleTimeoutError: The lock was not free within ``timeout``.
        """
        lock = self.lock_for(target)
        if not lock.acquire(timeout=-1 if timeout is None else timeout):
            raise RuleTimeoutError(f"'{target}' still busy after {timeout:g}s")
        return lock

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


def call_with_timeout(
    fn: Callable[[], R],
    timeout: Optional[float],
    what: str = "call",
) -> R:
    """Run a blocking call, giving up after ``timeout`` seconds.

    The call runs on a daemon thread so a hung capability cannot keep
    the process alive. On expiry the thread is abandoned and
    ``RuleTimeoutError`` is raised; whatever the call was doing is left
    in an unknown state.

    Args:
        fn: Zero-argument callable.
        timeout: Seconds to wait, or None to wait forever.
        what: Short description used in the error message.

    Returns:
        Whatever ``fn`` returns. Exceptions from ``fn`` propagate.
    """
    if timeout is None:
        return fn()

    outcome: dict[str, Any] = {}
    done = threading.Event()

    def _target() -> None:
        try:
            outcome["value"] = fn()
        except BaseException as exc:  # re-raised on the calling thread
            outcome["error"] = exc
        finally:
            done.set()

    t = threading.Thread(target=_target, name=f"melody-{what}", daemon=True)
    t.start()
    if not done.wait(timeout):
        raise RuleTimeoutError(f"{what} timed out after {timeout:g}s")
    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]


def run_bounded(
    items: Sequence[T],
    worker: Callable[[T], R],
    max_workers: int = DEFAULT_WORKERS,
    cancel: Optional[threading.Event] = None,
) -> tuple[list[tuple[T, R]], list[T]]:
    """Run ``worker`` over ``items`` on a bounded thread pool.

    Submission stops as soon as ``cancel`` is set; work already handed
    to the pool runs to completion. At most ``max_workers`` items are in
    flight at once, so a cancel takes effect between items rather than
    after everything has been queued.

    Exceptions raised by ``worker`` propagate to the caller once the
    pool has drained.

    Returns:
        ``(completed, not_started)`` where ``completed`` holds
        ``(item, result)`` pairs in input order.
    """
    workers = max(1, int(max_workers))
    slots = threading.BoundedSemaphore(workers)
    futures: list[tuple[T, Future]] = []
    not_started: list[T] = []

    def _run(item: T) -> R:
        try:
            return worker(item)
        finally:
            slots.release()

    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="melody-rule") as pool:
        for index, item in enumerate(items):
            slots.acquire()
            if cancel is not None and cancel.is_set():
                slots.release()
                not_started = list(items[index:])
                logger.info("Cancelled: %d rule(s) not started", len(not_started))
                break
            futures.append((item, pool.submit(_run, item)))

    completed = [(item, fut.result()) for item, fut in futures]
    return completed, not_started
