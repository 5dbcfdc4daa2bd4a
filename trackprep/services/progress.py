"""Progress reporting for pipeline runs.

The pipeline talks to a :class:`ProgressReporter`, which keeps the percent
non-decreasing and stops accepting events once a terminal event went out.
The reporter forwards each event to a :class:`ProgressSink`. Two sinks exist:

* :class:`StreamingSink` frames events as server-sent events for a response
  that stays open for the whole run;
* :class:`TaskStore` keeps only the latest state of each task so a detached
  run can be polled.

Both may be called from several segment workers at once.
"""
import json
import logging
import queue
import threading
import time
from typing import Any, Dict, Iterator, Optional

from ..models.task import ProcessingTask, ProgressEvent, Stage, TaskStatus, utc_timestamp

logger = logging.getLogger(__name__)


class ProgressSink:
    def emit(self, task_id: str, event: ProgressEvent) -> None:
        raise NotImplementedError

    def close(self, task_id: str) -> None:
        """Called by the orchestrator once the run is over."""


def format_frame(event: ProgressEvent) -> str:
    return f"data: {json.dumps(event.to_dict(), ensure_ascii=False)}\n\n"


_CLOSED = object()


class StreamingSink(ProgressSink):
    """Queue framed events for a streaming HTTP response.

    ``emit`` waits at most ``put_timeout`` seconds for a slow reader, then
    drops the progress event. Terminal events and the close marker make room
    by discarding the oldest queued frame instead of being dropped.
    """

    def __init__(self, maxsize: int = 256, put_timeout: float = 2.0):
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self.put_timeout = put_timeout
        self._detached = threading.Event()
        self._terminal_queued = False

    def _force(self, item):
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    pass

    def emit(self, task_id: str, event: ProgressEvent) -> None:
        if self._detached.is_set():
            return
        frame = format_frame(event)
        if event.terminal:
            self._terminal_queued = True
            self._force((frame, True))
            return
        try:
            self._queue.put((frame, False), timeout=self.put_timeout)
        except queue.Full:
            logger.warning("Task %s: reader too slow, dropped progress event at %.1f%%", task_id, event.progress)

    def close(self, task_id: str) -> None:
        if not self._terminal_queued:
            self._force(_CLOSED)
            return
        try:
            self._queue.put_nowait(_CLOSED)
        except queue.Full:
            pass

    def detach(self):
        """The reader went away; further events are discarded."""
        self._detached.set()

    def frames(self) -> Iterator[str]:
        while True:
            item = self._queue.get()
            if item is _CLOSED:
                return
            frame, terminal = item
            yield frame
            if terminal:
                return


class TaskStore(ProgressSink):
    """Latest-state table of background tasks, keyed by task id."""

    def __init__(self):
        self._lock = threading.Lock()
        self._tasks: Dict[str, ProcessingTask] = {}
        self._cancels: Dict[str, threading.Event] = {}

    def create(self, task_id: str) -> threading.Event:
        """Register a pending task and return its cancellation token."""
        with self._lock:
            if task_id in self._tasks:
                raise KeyError(task_id)
            self._tasks[task_id] = ProcessingTask(
                task_id=task_id,
                details={"type": "init", "message": "Processing task queued", "timestamp": utc_timestamp()},
            )
            cancel = threading.Event()
            self._cancels[task_id] = cancel
            return cancel

    def emit(self, task_id: str, event: ProgressEvent) -> None:
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                logger.warning("Progress for unknown task %s ignored", task_id)
                return
            if task.finished:
                return
            task.percent = max(task.percent, event.progress)
            task.stage = event.stage
            task.details = dict(event.details)
            task.updated_at = time.time()
            if event.type == "complete":
                task.status = TaskStatus.COMPLETED
                task.percent = 100.0
                task.result = event.result
            elif event.type == "error":
                task.status = TaskStatus.FAILED
                task.error = event.error
                task.error_details = event.error_details
            else:
                task.status = TaskStatus.RUNNING

    def get(self, task_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.snapshot() if task is not None else None

    def cancel(self, task_id: str) -> bool:
        with self._lock:
            cancel = self._cancels.get(task_id)
            task = self._tasks.get(task_id)
            if cancel is None or task is None or task.finished:
                return False
            cancel.set()
            return True

    def close(self, task_id: str) -> None:
        with self._lock:
            self._cancels.pop(task_id, None)

    def cleanup_expired(self, max_age_seconds: float) -> int:
        now = time.time()
        with self._lock:
            expired = [
                tid for tid, task in self._tasks.items()
                if task.finished and now - task.updated_at > max_age_seconds
            ]
            for tid in expired:
                del self._tasks[tid]
                self._cancels.pop(tid, None)
        if expired:
            logger.info("Purged %d expired tasks", len(expired))
        return len(expired)


class ProgressReporter:
    """Per-task front end to a sink."""

    def __init__(self, task_id: str, sink: ProgressSink):
        self.task_id = task_id
        self.sink = sink
        self._lock = threading.Lock()
        self._last = 0.0
        self._finished = False
        self._phase = None

    @property
    def last(self) -> float:
        return self._last

    @property
    def finished(self) -> bool:
        return self._finished

    def update(self, percent: float, stage: str, kind: str, message: str, **fields) -> bool:
        with self._lock:
            if self._finished:
                return False
            percent = max(self._last, min(100.0, round(percent, 1)))
            self._last = percent
            if kind != self._phase:
                self._phase = kind
                logger.info("Task %s: %s at %.1f%%", self.task_id, stage, percent)
            details = {"type": kind, "message": message, "timestamp": utc_timestamp()}
            details.update(fields)
            self.sink.emit(self.task_id, ProgressEvent("progress", percent, stage, details))
            return True

    def complete(self, result: Dict[str, Any], message: str = "Audio processing completed") -> bool:
        with self._lock:
            if self._finished:
                return False
            self._finished = True
            self._last = 100.0
            details = {"type": "complete", "message": message, "timestamp": utc_timestamp()}
            event = ProgressEvent("complete", 100.0, Stage.COMPLETED.value, details, result=result)
            self.sink.emit(self.task_id, event)
            return True

    def fail(self, message: str, error_details: Optional[str] = None) -> bool:
        with self._lock:
            if self._finished:
                return False
            self._finished = True
            details = {"type": "error", "message": message, "timestamp": utc_timestamp()}
            event = ProgressEvent(
                "error", self._last, Stage.FAILED.value, details, error=message, error_details=error_details
            )
            self.sink.emit(self.task_id, event)
            return True
