"""Exceptions raised by the decode pipeline and the pixel helpers."""

from __future__ import annotations


class FramePipeError(RuntimeError):
    """Base class for every framepipe failure."""


class ProbeFailure(FramePipeError):
    """ffprobe exited non-zero or its JSON lacked width/height/framerate."""


class PreflightFailure(FramePipeError):
    """The one-frame showinfo run produced no output at all."""


class PreflightParseFailure(PreflightFailure):
    """The showinfo output did not contain an ``s:<W>x<H>`` size."""


class InvalidFrameGeometry(FramePipeError, ValueError):
    """Odd/non-positive dimensions or a buffer too small for the frame."""


class PipeReadFailure(FramePipeError):
    """Reading raw frames from the decoder's stdout failed mid-stream."""


class Cancelled(FramePipeError):
    """Raised inside blocking operations once the cancel event is set."""


class QueueClosed(FramePipeError):
    """A frame was offered to a queue that no longer accepts frames."""
