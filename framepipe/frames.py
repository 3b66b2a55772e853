"""Pooled frame buffers and the bounded queue that carries them to workers."""

from __future__ import annotations

import collections
import threading
from typing import Deque, Dict, Iterator, List, Optional

import numpy as np

from .errors import Cancelled, QueueClosed


# How often a blocked put() re-checks the cancel event.
_CANCEL_POLL_SEC = 0.05


class FramePool:
    """Reusable byte buffers keyed by size class.

    One pool per pipeline run; the producer rents, workers give back. Every
    operation takes the lock so rent/return can come from any thread.
    """

    def __init__(self, max_retained: Optional[int] = None) -> None:
        self._lock = threading.Lock()
        self._free: Dict[int, List[bytearray]] = {}
        self._out: set[int] = set()
        self._max_retained = max_retained
        self.rented = 0
        self.returned = 0
        self.allocated = 0

    def rent(self, size: int) -> bytearray:
        size = int(size)
        if size <= 0:
            raise ValueError(f"buffer size must be positive, got {size}")
        with self._lock:
            free = self._free.get(size)
            if free:
                buf = free.pop()
            else:
                buf = bytearray(size)
                self.allocated += 1
            self._out.add(id(buf))
            self.rented += 1
        return buf

    def release(self, buf: bytearray) -> None:
        with self._lock:
            key = id(buf)
            if key not in self._out:
                raise ValueError("buffer was not rented from this pool (or was already returned)")
            self._out.discard(key)
            self.returned += 1
            free = self._free.setdefault(len(buf), [])
            if self._max_retained is None or len(free) < self._max_retained:
                free.append(buf)

    @property
    def outstanding(self) -> int:
        with self._lock:
            return len(self._out)

    def stats(self) -> dict:
        with self._lock:
            return {
                "rented": self.rented,
                "returned": self.returned,
                "allocated": self.allocated,
                "outstanding": len(self._out),
                "retained": sum(len(v) for v in self._free.values()),
            }


class PooledFrame:
    """One decoded frame backed by a buffer rented from a :class:`FramePool`.

    Whoever holds the frame owns it. ``release()`` hands the buffer back and
    must run on every exit path; afterwards the payload is off limits.
    """

    __slots__ = ("index", "length", "width", "height", "timestamp_sec", "layout", "_buffer", "_pool", "_released")

    def __init__(
        self,
        *,
        index: int,
        buffer: bytearray,
        length: int,
        width: int,
        height: int,
        timestamp_sec: float,
        pool: FramePool,
        layout: str = "rgba",
    ) -> None:
        if length > len(buffer):
            raise ValueError(f"frame length {length} exceeds buffer size {len(buffer)}")
        self.index = index
        self.length = length
        self.width = width
        self.height = height
        self.timestamp_sec = timestamp_sec
        self.layout = layout
        self._buffer = buffer
        self._pool = pool
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    @property
    def buffer(self) -> bytearray:
        if self._released:
            raise RuntimeError(f"frame {self.index} was already returned to the pool")
        return self._buffer

    @property
    def data(self) -> memoryview:
        """Exactly ``length`` bytes of payload (the rented buffer may be larger)."""
        return memoryview(self.buffer)[: self.length]

    def array(self, dtype=np.uint8) -> np.ndarray:
        """Zero-copy numpy view of the payload. Do not keep it past ``release()``."""
        dt = np.dtype(dtype)
        return np.frombuffer(self.buffer, dtype=dt, count=self.length // dt.itemsize)

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._pool.release(self._buffer)

    def __enter__(self) -> "PooledFrame":
        return self

    def __exit__(self, *exc) -> None:
        self.release()

    def __repr__(self) -> str:
        state = "released" if self._released else f"{self.length}B"
        return f"PooledFrame(index={self.index}, {self.width}x{self.height} {self.layout}, t={self.timestamp_sec:.3f}s, {state})"


class FrameQueue:
    """Fixed-capacity FIFO between one producer and many consumers.

    ``put`` blocks while full, ``get`` blocks while empty. ``close`` means no
    more frames will arrive: consumers still drain what is queued and then
    get ``None``.
    """

    def __init__(self, capacity: int) -> None:
        if int(capacity) < 1:
            raise ValueError(f"queue capacity must be >= 1, got {capacity}")
        self.capacity = int(capacity)
        self._items: Deque[PooledFrame] = collections.deque()
        self._cond = threading.Condition()
        self._closed = False
        self.high_water = 0
        self.total_put = 0

    def put(self, frame: PooledFrame, cancel: Optional[threading.Event] = None) -> None:
        with self._cond:
            while len(self._items) >= self.capacity and not self._closed:
                if cancel is not None and cancel.is_set():
                    raise Cancelled("cancelled while waiting for queue space")
                self._cond.wait(_CANCEL_POLL_SEC if cancel is not None else None)
            if self._closed:
                raise QueueClosed("queue is closed")
            if cancel is not None and cancel.is_set():
                raise Cancelled("cancelled before enqueue")
            self._items.append(frame)
            self.total_put += 1
            if len(self._items) > self.high_water:
                self.high_water = len(self._items)
            self._cond.notify_all()

    def get(self, timeout: Optional[float] = None) -> Optional[PooledFrame]:
        """Next frame, or ``None`` once the queue is closed and empty.

        With a ``timeout`` an open-but-empty queue raises ``TimeoutError``.
        """
        with self._cond:
            if not self._cond.wait_for(lambda: self._items or self._closed, timeout):
                raise TimeoutError("no frame available")
            if self._items:
                frame = self._items.popleft()
                self._cond.notify_all()
                return frame
            return None

    def close(self) -> bool:
        """Stop accepting frames. Returns True only for the call that closed it."""
        with self._cond:
            if self._closed:
                return False
            self._closed = True
            self._cond.notify_all()
            return True

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    def drain(self) -> List[PooledFrame]:
        """Remove and return everything still queued."""
        with self._cond:
            items = list(self._items)
            self._items.clear()
            self._cond.notify_all()
            return items

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    def __iter__(self) -> Iterator[PooledFrame]:
        while True:
            frame = self.get()
            if frame is None:
                return
            yield frame
