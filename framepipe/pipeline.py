"""ffmpeg rawvideo → pooled frames → bounded queue.

One producer thread reads fixed-size frames from the decoder's stdout, a
second thread drains stderr for the life of the process, and a watcher
thread kills the process tree when the run is cancelled so a blocked read
returns immediately.
"""

from __future__ import annotations

import collections
import logging
import shlex
import subprocess
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, List, Optional, Tuple

import psutil

from .color import yuv420p10le_frame_size, yuv420p_frame_size
from .config import PipelineConfig
from .errors import Cancelled, PipeReadFailure, QueueClosed
from .frames import FramePool, FrameQueue, PooledFrame
from .video_io import Command, VideoInfo, probe_output_size, probe_video_info, require_ffmpeg
from .workers import FrameCallback, WorkerPool

log = logging.getLogger(__name__)

# Timestamp base when the caller hands in a VideoInfo with fps <= 0.
FALLBACK_TIMESTAMP_FPS = 24.0
STDERR_TAIL_LINES = 200


@dataclass(frozen=True)
class PixelLayout:
    """Raw output format requested from ffmpeg (``-pix_fmt``) and its frame size."""

    pix_fmt: str
    frame_size: Callable[[int, int], int]
    planar: bool


RGBA = PixelLayout("rgba", lambda w, h: w * h * 4, planar=False)
YUV420P = PixelLayout("yuv420p", yuv420p_frame_size, planar=True)
YUV420P10LE = PixelLayout("yuv420p10le", yuv420p10le_frame_size, planar=True)

LAYOUTS: Dict[str, PixelLayout] = {lay.pix_fmt: lay for lay in (RGBA, YUV420P, YUV420P10LE)}


def get_layout(layout) -> PixelLayout:
    if isinstance(layout, PixelLayout):
        return layout
    try:
        return LAYOUTS[str(layout).lower()]
    except KeyError:
        raise ValueError(f"unsupported pixel layout {layout!r}; choose from {sorted(LAYOUTS)}") from None


def build_decode_args(
    path: str,
    layout: PixelLayout = RGBA,
    *,
    scale: Optional[str] = None,
    max_frames: Optional[int] = None,
    keyframes_only: bool = False,
    hwaccel: bool = True,
) -> List[str]:
    args = ["-loglevel", "error"]
    if keyframes_only:
        args += ["-skip_frame", "nokey"]
    if hwaccel:
        args += ["-hwaccel", "auto"]
    args += ["-i", path]
    if (scale or "").strip():
        args += ["-vf", f"scale={scale}"]
    if max_frames is not None and int(max_frames) > 0:
        args += ["-frames:v", str(int(max_frames))]
    args += ["-map", "0:v:0", "-vsync", "0", "-f", "rawvideo", "-pix_fmt", layout.pix_fmt, "pipe:1"]
    return args


def frame_timestamp(index: int, fps: float) -> float:
    if fps > 0:
        return index / fps
    return index / FALLBACK_TIMESTAMP_FPS


def _kill_tree(proc: subprocess.Popen) -> None:
    """Kill ffmpeg and anything it spawned (hwaccel helpers, wrappers).

    psutil failures only cost the children; ffmpeg itself is always killed.
    """
    try:
        children = psutil.Process(proc.pid).children(recursive=True)
    except psutil.Error as e:
        log.debug("Could not list children of pid=%s: %s", proc.pid, e)
        children = []
    for child in children:
        try:
            child.kill()
        except psutil.Error as e:
            log.debug("Could not kill child pid=%s: %s", child.pid, e)
    try:
        proc.kill()
    except ProcessLookupError:
        pass


class DecodePipeline:
    """Producer half of a run. ``start()`` returns the queue workers consume."""

    def __init__(
        self,
        path: str,
        info: VideoInfo,
        *,
        pool: Optional[FramePool] = None,
        queue_capacity: int = 64,
        max_frames: Optional[int] = None,
        scale: Optional[str] = None,
        keyframes_only: bool = False,
        layout=RGBA,
        hwaccel: bool = True,
        ffmpeg: Optional[Command] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.path = path
        self.info = info
        self.pool = pool if pool is not None else FramePool()
        self.layout = get_layout(layout)
        self.queue = FrameQueue(queue_capacity)
        self._max_frames = max_frames
        self._scale = scale
        self._keyframes_only = keyframes_only
        self._hwaccel = hwaccel
        self._ffmpeg = require_ffmpeg(ffmpeg)
        # The caller's event is only observed; cancel() never sets it.
        self._external_cancel = cancel_event
        self._cancel = threading.Event()
        self._done = threading.Event()
        self._stderr_tail: Deque[str] = collections.deque(maxlen=STDERR_TAIL_LINES)
        self._proc: Optional[subprocess.Popen] = None
        self._producer: Optional[threading.Thread] = None
        self._stderr_thread: Optional[threading.Thread] = None
        self._watcher: Optional[threading.Thread] = None
        self._killed = False
        self.output_size: Optional[Tuple[int, int]] = None
        self.frame_size = 0
        self.frames_produced = 0
        self.returncode: Optional[int] = None
        self.error: Optional[BaseException] = None
        self.last_cmdline: Optional[str] = None

    # ---- public API ----
    def start(self) -> FrameQueue:
        if self._producer is not None:
            raise RuntimeError("pipeline already started")
        w, h = probe_output_size(self.path, self._scale, self._ffmpeg)
        self.output_size = (w, h)
        self.frame_size = self.layout.frame_size(w, h)
        log.info("Frame size: %dx%d %s (%d bytes)", w, h, self.layout.pix_fmt, self.frame_size)

        cmd = self._ffmpeg + build_decode_args(
            self.path,
            self.layout,
            scale=self._scale,
            max_frames=self._max_frames,
            keyframes_only=self._keyframes_only,
            hwaccel=self._hwaccel,
        )
        self.last_cmdline = " ".join(shlex.quote(part) for part in cmd)
        log.debug("Decode cmd: %s", self.last_cmdline)
        self._proc = subprocess.Popen(cmd, stdin=subprocess.DEVNULL, stdout=subprocess.PIPE, stderr=subprocess.PIPE)

        self._stderr_thread = threading.Thread(target=self._drain_stderr, name="framepipe.stderr", daemon=True)
        self._stderr_thread.start()
        self._watcher = threading.Thread(target=self._watch_cancel, name="framepipe.cancel", daemon=True)
        self._watcher.start()
        self._producer = threading.Thread(target=self._produce, name="framepipe.producer", daemon=True)
        self._producer.start()
        return self.queue

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def process(self) -> Optional[subprocess.Popen]:
        return self._proc

    @property
    def stderr_tail(self) -> List[str]:
        return list(self._stderr_tail)

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the producer to finish and re-raise its failure, if any."""
        if self._producer is not None:
            self._producer.join(timeout)
        if self._watcher is not None and self._done.is_set():
            self._watcher.join()
        if self.error is not None:
            raise self.error

    # ---- threads ----
    def _drain_stderr(self) -> None:
        proc = self._proc
        if proc is None or proc.stderr is None:
            return
        try:
            for line in iter(proc.stderr.readline, b""):
                ln = line.decode("utf-8", "ignore").strip()
                if ln:
                    self._stderr_tail.append(ln)
                    log.debug("ffmpeg: %s", ln)
        except (OSError, ValueError):
            # pipe closed underneath us during shutdown
            return

    def _cancel_requested(self) -> bool:
        if self._external_cancel is not None and self._external_cancel.is_set():
            self._cancel.set()
        return self._cancel.is_set()

    def _watch_cancel(self) -> None:
        while not self._done.is_set():
            if self._cancel.wait(0.05) or self._cancel_requested():
                if not self._done.is_set() and self._proc is not None and self._proc.poll() is None:
                    log.info("Cancel requested; killing decoder pid=%s", self._proc.pid)
                    self._killed = True
                    _kill_tree(self._proc)
                return

    def _read_exact(self, stream, buf: bytearray, count: int) -> bool:
        offset = 0
        with memoryview(buf) as mv:
            while offset < count:
                n = stream.readinto(mv[offset:count])
                if not n:
                    if offset and self._cancel.is_set():
                        log.debug("Dropping frame cut short by cancel (%d of %d bytes)", offset, count)
                    elif offset:
                        log.warning("Discarding partial trailing frame (%d of %d bytes)", offset, count)
                    return False
                offset += n
        return True

    def _produce(self) -> None:
        assert self._proc is not None and self._proc.stdout is not None
        stdout = self._proc.stdout
        fps = self.info.fps
        w, h = self.output_size or (0, 0)
        index = 0
        force = False
        try:
            while not self._cancel_requested():
                buf = self.pool.rent(self.frame_size)
                try:
                    ok = self._read_exact(stdout, buf, self.frame_size)
                except (OSError, ValueError) as exc:
                    self.pool.release(buf)
                    if self._cancel.is_set():
                        break
                    raise PipeReadFailure(f"reading frame {index} from ffmpeg failed: {exc}") from exc
                if not ok or self._cancel.is_set():
                    self.pool.release(buf)
                    break
                frame = PooledFrame(
                    index=index,
                    buffer=buf,
                    length=self.frame_size,
                    width=w,
                    height=h,
                    timestamp_sec=frame_timestamp(index, fps),
                    pool=self.pool,
                    layout=self.layout.pix_fmt,
                )
                try:
                    self.queue.put(frame, cancel=self._cancel)
                except (Cancelled, QueueClosed):
                    frame.release()
                    break
                index += 1
                self.frames_produced = index
        except Exception as exc:
            log.error("Decode of %s failed after %d frames: %s", self.path, index, exc)
            self.error = exc
            force = True
        finally:
            self.queue.close()
            try:
                self._stop_process(force=force or self._cancel_requested())
            except Exception as exc:
                log.error("Stopping decoder for %s failed: %s", self.path, exc)
                if self.error is None:
                    self.error = exc
            finally:
                self._done.set()

    def _stop_process(self, force: bool) -> None:
        proc = self._proc
        if proc is None:
            return
        if force and proc.poll() is None:
            self._killed = True
            _kill_tree(proc)
        self.returncode = proc.wait()
        if proc.stdout is not None:
            proc.stdout.close()
        if self._stderr_thread is not None:
            self._stderr_thread.join()
        if proc.stderr is not None:
            proc.stderr.close()
        if self._killed:
            log.info("Decoder terminated (exit %s) after %d frames", self.returncode, self.frames_produced)
        elif self.returncode != 0:
            log.warning(
                "ffmpeg exited with %s after %d frames:\n%s",
                self.returncode, self.frames_produced, "\n".join(list(self._stderr_tail)[-20:]),
            )
        else:
            log.info("Decoder finished: %d frames", self.frames_produced)


@dataclass
class PipelineReport:
    info: VideoInfo
    output_size: Tuple[int, int]
    frames_decoded: int
    processed: int
    failures: Dict[int, BaseException] = field(default_factory=dict)
    cancelled: bool = False
    returncode: Optional[int] = None
    pool_rented: int = 0
    pool_returned: int = 0
    elapsed_sec: float = 0.0

    @property
    def fps(self) -> float:
        return self.processed / self.elapsed_sec if self.elapsed_sec > 0 else 0.0


def run_pipeline(
    path: str,
    callback: FrameCallback,
    config: Optional[PipelineConfig] = None,
    *,
    cancel_event: Optional[threading.Event] = None,
    ffmpeg: Optional[Command] = None,
    ffprobe: Optional[Command] = None,
    info: Optional[VideoInfo] = None,
    on_frame_done: Optional[Callable[[PooledFrame], None]] = None,
) -> PipelineReport:
    """Probe, decode and fan frames out to ``callback(frame, worker_id)``.

    Cancellation (event or Ctrl+C) is not an error: the partial report comes
    back with ``cancelled=True``. Decoder read failures are re-raised once
    every thread has stopped and every buffer is back in the pool.
    """
    cfg = config or PipelineConfig()
    t0 = time.perf_counter()
    if info is None:
        info = probe_video_info(path, ffprobe)
    pool = FramePool()
    pipe = DecodePipeline(
        path,
        info,
        pool=pool,
        queue_capacity=cfg.queue_capacity,
        max_frames=cfg.max_frames,
        scale=cfg.scale,
        keyframes_only=cfg.keyframes_only,
        layout=cfg.layout,
        hwaccel=cfg.hwaccel,
        ffmpeg=ffmpeg,
        cancel_event=cancel_event,
    )
    queue = pipe.start()
    workers = WorkerPool(
        queue,
        callback,
        cfg.resolved_workers(),
        isolate_errors=cfg.isolate_errors,
        on_fatal=pipe.cancel,
        on_frame_done=on_frame_done,
        log_every=cfg.log_every,
    )
    workers.start()
    callback_error: Optional[BaseException] = None
    try:
        try:
            wr = workers.join()
        except KeyboardInterrupt:
            log.warning("Interrupted; cancelling decode")
            pipe.cancel()
            wr = workers.join()
    except Exception as exc:
        callback_error = exc
        wr = None
    # Workers only leave normally once the queue is closed; anything else
    # means nobody is consuming and the producer must not wait on put().
    if not queue.closed:
        log.warning("Workers stopped before the decoder finished; cancelling decode")
        pipe.cancel()
    try:
        pipe.join()
    except Exception as exc:
        if callback_error is not None:
            raise exc from callback_error
        raise
    finally:
        for frame in queue.drain():
            frame.release()
    if callback_error is not None:
        raise callback_error
    assert wr is not None
    return PipelineReport(
        info=info,
        output_size=pipe.output_size or (0, 0),
        frames_decoded=pipe.frames_produced,
        processed=wr.processed,
        failures=dict(wr.failures),
        cancelled=pipe.cancelled,
        returncode=pipe.returncode,
        pool_rented=pool.rented,
        pool_returned=pool.returned,
        elapsed_sec=time.perf_counter() - t0,
    )
