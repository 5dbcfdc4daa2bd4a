import threading
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Callable, Iterable, List, Optional, TypeVar

from ..errors import TaskCancelled

T = TypeVar("T")
R = TypeVar("R")


def bounded_map(
    fn: Callable[[T], R],
    items: Iterable[T],
    limit: int,
    cancel: Optional[threading.Event] = None,
) -> List[R]:
    """Apply ``fn`` to every item with at most ``limit`` calls in flight.

    ``result[i]`` always corresponds to ``items[i]`` whatever order the calls
    finish in. The first exception raised by ``fn`` is re-raised once the
    calls already running have drained; no new item is started after it is
    seen. Setting ``cancel`` likewise stops new items from starting and
    raises ``TaskCancelled``.
    """
    items = list(items)
    results: List[Optional[R]] = [None] * len(items)
    if not items:
        return results
    limit = max(1, int(limit))
    queue = iter(enumerate(items))
    error: Optional[BaseException] = None
    finished = 0

    with ThreadPoolExecutor(max_workers=min(limit, len(items)), thread_name_prefix="bounded-map") as pool:
        pending = {}

        def submit_next() -> bool:
            for index, item in queue:
                pending[pool.submit(fn, item)] = index
                return True
            return False

        def stopped() -> bool:
            return error is not None or (cancel is not None and cancel.is_set())

        while len(pending) < limit and not stopped() and submit_next():
            pass

        while pending:
            done, _ = wait(list(pending), return_when=FIRST_COMPLETED)
            for fut in done:
                index = pending.pop(fut)
                exc = fut.exception()
                if exc is not None:
                    if error is None:
                        error = exc
                    continue
                results[index] = fut.result()
                finished += 1
            while len(pending) < limit and not stopped() and submit_next():
                pass

    if error is not None:
        raise error
    if finished < len(items):
        raise TaskCancelled("Processing cancelled")
    return results


class ProgressCounter:
    """Completed-item counter shared by concurrent workers."""

    def __init__(self, total: int):
        self.total = total
        self._done = 0
        self._lock = threading.Lock()

    def increment(self) -> int:
        with self._lock:
            self._done += 1
            return self._done

    @property
    def done(self) -> int:
        with self._lock:
            return self._done
