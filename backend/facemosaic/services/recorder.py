"""
Recording sink for composited video frames.

The render loop only hands over its latest presented frame; a sampler thread
encodes whatever frame is current at a fixed rate (like a canvas capture
stream) and appends the muxed output to an in-memory chunk list. stop()
concatenates the chunks into one downloadable file.
"""

import logging
import threading
import time
from typing import Optional

import av
import numpy as np

from facemosaic.core.config import settings

logger = logging.getLogger(__name__)


class RecorderError(RuntimeError):
    pass


class _ChunkSink:
    """Write-only, non-seekable target for the muxer."""

    def __init__(self):
        self.chunks: list[bytes] = []

    def write(self, data) -> int:
        chunk = bytes(data)
        if chunk:
            self.chunks.append(chunk)
        return len(chunk)

    def getvalue(self) -> bytes:
        return b"".join(self.chunks)


class FrameRecorder:
    def __init__(
        self,
        fps: Optional[int] = None,
        codec: Optional[str] = None,
        fallback_codec: Optional[str] = None,
        container_format: Optional[str] = None,
        encoder_options: Optional[dict[str, str]] = None,
    ):
        self.fps = int(fps or settings.recording.fps)
        self.codec = codec or settings.recording.codec
        self.fallback_codec = settings.recording.fallback_codec if fallback_codec is None else fallback_codec
        self.container_format = container_format or settings.recording.container_format
        self.encoder_options = settings.recording.encoder_options if encoder_options is None else encoder_options

        self.codec_name: Optional[str] = None
        self.frames_encoded = 0

        self._sink: Optional[_ChunkSink] = None
        self._container = None
        self._stream = None
        self._latest: Optional[np.ndarray] = None
        self._frame_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._error: Optional[Exception] = None

    @property
    def is_recording(self) -> bool:
        return self._container is not None

    @property
    def mime_type(self) -> str:
        return f"video/{self.container_format}"

    def start(self, width: int, height: int):
        if self.is_recording:
            logger.warning("Recorder already running")
            return

        try:
            self._open(self.codec, width, height)
        except Exception as e:
            if not self.fallback_codec or self.fallback_codec == self.codec:
                raise RecorderError(f"Cannot create {self.codec} encoder: {e}") from e
            logger.warning(f"Codec {self.codec} unavailable ({e}), falling back to {self.fallback_codec}")
            try:
                self._open(self.fallback_codec, width, height)
            except Exception as fallback_error:
                raise RecorderError(
                    f"Cannot create recorder with {self.codec} or {self.fallback_codec}: {fallback_error}"
                ) from fallback_error

        self.frames_encoded = 0
        self._error = None
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._sample_loop, daemon=True, name="FrameRecorder")
        self._thread.start()
        logger.info(f"Recording started ({self.codec_name}, {width}x{height} @ {self.fps} fps)")

    def submit(self, frame: np.ndarray):
        """Replace the frame the sampler will encode next. Never blocks on encoding."""
        with self._frame_lock:
            self._latest = frame

    def stop(self) -> bytes:
        """
        Finish the file and return its bytes.

        Waits for the sampler thread and flushes the encoder, which can take a
        while for long takes; async callers run it in a worker thread.
        """
        if self._container is None:
            raise RecorderError("Recorder is not running")

        self._stop_event.set()
        if self._thread:
            # the sampler owns the container until it exits
            self._thread.join()
        self._thread = None

        try:
            if self.frames_encoded == 0:
                with self._frame_lock:
                    latest = self._latest
                if latest is not None:
                    self._encode(latest)
            for packet in self._stream.encode():
                self._container.mux(packet)
            self._container.close()
        except Exception as e:
            raise RecorderError(f"Failed to finalize recording: {e}") from e
        finally:
            self._container = None
            self._stream = None

        data = self._sink.getvalue()
        logger.info(
            f"Recording stopped: {self.frames_encoded} frames, "
            f"{len(self._sink.chunks)} chunks, {len(data)} bytes"
        )
        if self._error is not None:
            logger.warning(f"Recording had encoder errors: {self._error}")
        self._sink = None
        return data

    def _open(self, codec: str, width: int, height: int):
        sink = _ChunkSink()
        container = av.open(sink, mode="w", format=self.container_format)
        try:
            stream = container.add_stream(codec, rate=self.fps, options=dict(self.encoder_options))
            # yuv420p needs even dimensions
            stream.width = max(2, width - width % 2)
            stream.height = max(2, height - height % 2)
            stream.pix_fmt = "yuv420p"
            stream.codec_context.bit_rate = settings.recording.bit_rate
            stream.codec_context.open()
        except Exception:
            container.close()
            raise

        self._sink = sink
        self._container = container
        self._stream = stream
        self.codec_name = codec

    def _encode(self, frame: np.ndarray):
        video_frame = av.VideoFrame.from_ndarray(np.ascontiguousarray(frame), format="bgr24")
        video_frame.pts = self.frames_encoded
        for packet in self._stream.encode(video_frame):
            self._container.mux(packet)
        self.frames_encoded += 1

    def _sample_loop(self):
        interval = 1.0 / self.fps
        next_tick = time.monotonic()
        while not self._stop_event.is_set():
            with self._frame_lock:
                latest = self._latest

            if latest is not None:
                try:
                    self._encode(latest)
                except Exception as e:
                    logger.error(f"Recorder failed to encode frame: {e}")
                    self._error = e
                    return

            next_tick += interval
            delay = next_tick - time.monotonic()
            if delay < 0:
                next_tick = time.monotonic()
                delay = 0
            self._stop_event.wait(delay)
