"""Worker pool for background jobs and the serialized owner queue.

WorkerPool runs scans, probes, renders and conversions. Owner is the single
thread on which library state is mutated; background jobs hand their results
to it instead of touching shared state.
"""
from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, Future, wait, FIRST_COMPLETED
from typing import Callable, Iterable, Optional, Tuple, Any, Dict, Set, Iterator
import os
import threading

from loguru import logger


def default_workers() -> int:
    return max(1, os.cpu_count() or 4)


class WorkerPool:
    def __init__(self, max_workers: Optional[int] = None, *, name: str = "samps-worker") -> None:
        self._max_workers = max_workers or default_workers()
        self._exe = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix=name)

    @property
    def max_workers(self) -> int:
        return self._max_workers

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        return self._exe.submit(fn, *args, **kwargs)

    def imap_unordered_bounded(
        self,
        fn: Callable[[Any], Any],
        iterable: Iterable[Any],
        max_pending: int,
    ) -> Iterator[Tuple[Any, Future]]:
        """Yield (item, future) as they complete while keeping <= max_pending futures in flight.

        - fn: function called as fn(item)
        - iterable: items to process
        - max_pending: max futures in flight (should be a small multiple of workers)

        The completed future is yielded rather than its result so that one
        failing item does not end the iteration for the others.
        """
        if max_pending < 1:
            raise ValueError("max_pending must be >= 1")

        logger.debug(f"bounded window: bound={max_pending} (workers={self._max_workers})")

        it = iter(iterable)
        pending: Dict[Future, Any] = {}
        active: Set[Future] = set()

        def try_submit() -> bool:
            try:
                item = next(it)
            except StopIteration:
                return False
            fut = self._exe.submit(fn, item)
            pending[fut] = item
            active.add(fut)
            return True

        while len(active) < max_pending and try_submit():
            pass

        while active:
            done_set, _ = wait(active, return_when=FIRST_COMPLETED)
            for fut in done_set:
                active.remove(fut)
                item = pending.pop(fut)
                yield item, fut
                if len(active) < max_pending:
                    try_submit()

    def shutdown(self, wait: bool = True) -> None:
        self._exe.shutdown(wait=wait)


class Owner:
    """Single-threaded serialized executor: the only writer of library state.

    `post` enqueues a callable and returns its Future. `call` runs a callable
    on the owner and returns its result, executing inline when the caller is
    already on the owner thread (so owner code can call public API freely).
    """

    def __init__(self, name: str = "samps-owner") -> None:
        self._exe = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)
        self._local = threading.local()

    def is_owner_thread(self) -> bool:
        return getattr(self._local, "active", False)

    def _run(self, fn: Callable[..., Any], args: Tuple[Any, ...], kwargs: Dict[str, Any]) -> Any:
        self._local.active = True
        try:
            return fn(*args, **kwargs)
        finally:
            self._local.active = False

    def post(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        return self._exe.submit(self._run, fn, args, kwargs)

    def call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        if self.is_owner_thread():
            return fn(*args, **kwargs)
        return self.post(fn, *args, **kwargs).result()

    def shutdown(self, wait: bool = True) -> None:
        self._exe.shutdown(wait=wait)
