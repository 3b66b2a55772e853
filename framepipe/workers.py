"""Consumer side: N threads draining a :class:`FrameQueue`."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .config import default_worker_count
from .frames import FrameQueue, PooledFrame

log = logging.getLogger(__name__)

FrameCallback = Callable[[PooledFrame, int], None]


class FrameResults:
    """Thread-safe map of frame index → result.

    Workers finish out of order, so anything keyed by time must go through
    the index rather than arrival order.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._data: Dict[int, Any] = {}

    def __setitem__(self, index: int, value: Any) -> None:
        with self._lock:
            self._data[int(index)] = value

    def __getitem__(self, index: int) -> Any:
        with self._lock:
            return self._data[int(index)]

    def get(self, index: int, default: Any = None) -> Any:
        with self._lock:
            return self._data.get(int(index), default)

    def __contains__(self, index: object) -> bool:
        with self._lock:
            return index in self._data

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def items(self) -> List[Tuple[int, Any]]:
        """Snapshot sorted by frame index."""
        with self._lock:
            return sorted(self._data.items())

    def values(self) -> List[Any]:
        return [v for _, v in self.items()]

    def __iter__(self) -> Iterator[int]:
        return iter([k for k, _ in self.items()])


@dataclass
class WorkerReport:
    processed: int = 0
    failures: Dict[int, BaseException] = field(default_factory=dict)
    per_worker: Dict[int, int] = field(default_factory=dict)


class WorkerPool:
    def __init__(
        self,
        queue: FrameQueue,
        callback: FrameCallback,
        workers: Optional[int] = None,
        *,
        isolate_errors: bool = True,
        on_fatal: Optional[Callable[[], None]] = None,
        on_frame_done: Optional[Callable[[PooledFrame], None]] = None,
        log_every: int = 100,
    ) -> None:
        self._queue = queue
        self._callback = callback
        self.workers = int(workers) if workers and int(workers) > 0 else default_worker_count()
        self._isolate = isolate_errors
        self._on_fatal = on_fatal
        self._on_frame_done = on_frame_done
        self._log_every = max(0, int(log_every))
        self._lock = threading.Lock()
        self._report = WorkerReport()
        self._fatal: Optional[BaseException] = None
        self._threads: List[threading.Thread] = []

    def start(self) -> None:
        if self._threads:
            raise RuntimeError("worker pool already started")
        for worker_id in range(self.workers):
            t = threading.Thread(target=self._work, args=(worker_id,), name=f"framepipe.worker{worker_id}", daemon=True)
            self._threads.append(t)
            t.start()
        log.info("Started %d workers", self.workers)

    def join(self, timeout: Optional[float] = None) -> WorkerReport:
        for t in self._threads:
            t.join(timeout)
        if self._fatal is not None and not self._isolate:
            raise self._fatal
        return self._report

    def run(self) -> WorkerReport:
        self.start()
        return self.join()

    @property
    def alive(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def _record(self, worker_id: int, frame: PooledFrame, error: Optional[BaseException]) -> None:
        with self._lock:
            if error is None:
                self._report.processed += 1
                self._report.per_worker[worker_id] = self._report.per_worker.get(worker_id, 0) + 1
            else:
                self._report.failures[frame.index] = error

    def _work(self, worker_id: int) -> None:
        for frame in self._queue:
            try:
                if self._fatal is not None:
                    # strict mode after a failure: just hand buffers back until the queue closes
                    continue
                if self._log_every and frame.index % self._log_every == 0:
                    log.info(
                        "Worker %03d: Frame %06d at %.2fs - %d bytes",
                        worker_id, frame.index, frame.timestamp_sec, frame.length,
                    )
                try:
                    self._callback(frame, worker_id)
                except Exception as exc:
                    self._record(worker_id, frame, exc)
                    if self._isolate:
                        log.exception("Callback failed on frame %d (worker %d)", frame.index, worker_id)
                        continue
                    with self._lock:
                        first = self._fatal is None
                        if first:
                            self._fatal = exc
                    if first:
                        log.error("Callback failed on frame %d (worker %d); stopping pipeline: %s", frame.index, worker_id, exc)
                        if self._on_fatal is not None:
                            self._on_fatal()
                    continue
                self._record(worker_id, frame, None)
                if self._on_frame_done is not None:
                    try:
                        self._on_frame_done(frame)
                    except Exception:
                        # progress hooks never take a worker down
                        log.exception("on_frame_done failed on frame %d (worker %d)", frame.index, worker_id)
            finally:
                frame.release()
