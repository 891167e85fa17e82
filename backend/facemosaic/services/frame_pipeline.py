"""
Frame pipelines: detect -> track -> composite -> present.

ImagePipeline runs once on a still image. VideoPipeline runs one tick per
presented frame on the event loop; awaiting the detector (in a worker thread)
is the only suspension point inside a tick, so clicks and playback commands
are handled between ticks and never race with compositing.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

import cv2
import numpy as np

from facemosaic.core.config import settings
from facemosaic.models.faces import Detection, TrackedFace
from facemosaic.services.compositor import MosaicCompositor
from facemosaic.services.face_tracker import FaceTracker
from facemosaic.services.pixelation import PixelationStrategy, create_pixelator

logger = logging.getLogger(__name__)


class InvalidMediaError(ValueError):
    pass


class PipelineStateError(RuntimeError):
    pass


class PipelineState(str, Enum):
    READY = "ready"
    PLAYING = "playing"
    PAUSED = "paused"
    ENDED = "ended"
    STOPPED = "stopped"
    FAILED = "failed"


@dataclass
class FrameState:
    faces: list[TrackedFace] = field(default_factory=list)
    raw_frame: Optional[np.ndarray] = None
    output_frame: Optional[np.ndarray] = None
    frame_index: int = 0


class MediaPipeline:
    kind = "media"

    def __init__(self, detector, pixelator, elliptical: bool, compositor: Optional[MosaicCompositor] = None):
        self.detector = detector
        self.pixelator = pixelator
        self.elliptical = elliptical
        self.compositor = compositor or MosaicCompositor()
        self.frame_state = FrameState()
        self.state = PipelineState.READY
        self.error: Optional[str] = None
        self.recorder = None
        self.width = 0
        self.height = 0

    @property
    def faces(self) -> list[TrackedFace]:
        return self.frame_state.faces

    @property
    def is_playing(self) -> bool:
        return self.state == PipelineState.PLAYING

    def get_face(self, face_id: int) -> Optional[TrackedFace]:
        for face in self.frame_state.faces:
            if face.face_id == face_id:
                return face
        return None

    async def _detect(self, frame: np.ndarray, with_landmarks: bool = False) -> list[Detection]:
        return await asyncio.to_thread(self.detector.detect, frame, with_landmarks)

    def recomposite(self) -> Optional[np.ndarray]:
        raw = self.frame_state.raw_frame
        if raw is None:
            return None
        output = self.compositor.render(raw, self.frame_state.faces, self.pixelator, self.elliptical)
        self._present(output)
        return output

    def _present(self, output: np.ndarray):
        self.frame_state.output_frame = output
        if self.recorder is not None:
            self.recorder.submit(output)

    def encode_output(self, ext: str = ".jpg") -> bytes:
        output = self.frame_state.output_frame
        if output is None:
            raise PipelineStateError("No frame has been rendered yet")
        params = []
        if ext in (".jpg", ".jpeg"):
            params = [cv2.IMWRITE_JPEG_QUALITY, settings.pipeline.jpeg_quality]
        ok, buffer = cv2.imencode(ext, output, params)
        if not ok:
            raise PipelineStateError(f"Failed to encode frame as {ext}")
        return buffer.tobytes()


class ImagePipeline(MediaPipeline):
    kind = "image"

    def __init__(self, detector, image: np.ndarray, compositor: Optional[MosaicCompositor] = None):
        super().__init__(
            detector,
            create_pixelator(PixelationStrategy.BLOCK_SAMPLE),
            elliptical=settings.mosaic.image_soft_edge,
            compositor=compositor,
        )
        if image is None or image.size == 0:
            raise InvalidMediaError("Empty image")
        self.height, self.width = image.shape[:2]
        self.frame_state.raw_frame = image
        self.landmarks: dict[int, np.ndarray] = {}

    async def run(self):
        """Detect once and composite; no tracking for a still image."""
        detections = await self._detect(self.frame_state.raw_frame, with_landmarks=True)

        faces = []
        self.landmarks = {}
        for detection in detections:
            face = TrackedFace(box=detection.box)
            if detection.landmarks is not None:
                self.landmarks[face.face_id] = detection.landmarks
            faces.append(face)

        self.frame_state.faces = faces
        self.frame_state.frame_index = 1
        self.recomposite()
        logger.info(f"Image pipeline found {len(faces)} face(s) in {self.width}x{self.height} image")


class VideoPipeline(MediaPipeline):
    kind = "video"

    def __init__(
        self,
        detector,
        source_path: str,
        tracker: Optional[FaceTracker] = None,
        compositor: Optional[MosaicCompositor] = None,
    ):
        super().__init__(
            detector,
            create_pixelator(PixelationStrategy.SHRINK_EXPAND),
            elliptical=True,
            compositor=compositor,
        )
        self.source_path = source_path
        self.tracker = tracker or FaceTracker()
        self.cap: Optional[cv2.VideoCapture] = None
        self.fps = settings.pipeline.default_fps
        self.consecutive_failures = 0
        self.ended_callbacks: list[Callable[["VideoPipeline"], None]] = []
        self._task: Optional[asyncio.Task] = None

    async def load(self):
        """Open the source, read metadata and render the first frame."""
        self.cap = cv2.VideoCapture(self.source_path)
        if not self.cap.isOpened():
            self.cap.release()
            self.cap = None
            raise InvalidMediaError(f"Cannot open video: {self.source_path}")

        self.width = int(self.cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        self.height = int(self.cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        fps = self.cap.get(cv2.CAP_PROP_FPS)
        if fps and fps > 0:
            self.fps = float(fps)

        if self.width <= 0 or self.height <= 0:
            self.release()
            raise InvalidMediaError("Video has no frame size metadata")

        ok, frame = self.cap.read()
        if not ok or frame is None:
            self.release()
            raise InvalidMediaError("Video has no decodable frames")

        await self._process(frame)
        self._rewind()
        logger.info(f"Video loaded: {self.width}x{self.height} @ {self.fps:.2f} fps")

    def play(self):
        if self.state in (PipelineState.STOPPED, PipelineState.FAILED):
            raise PipelineStateError(f"Cannot play a {self.state.value} pipeline")
        if self.state == PipelineState.PLAYING:
            return
        if self.state == PipelineState.ENDED:
            self._rewind()

        self.state = PipelineState.PLAYING
        # A paused loop may still be finishing its last tick; it picks up the new state.
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info("Playback started")

    def pause(self):
        if self.state != PipelineState.PLAYING:
            return
        self.state = PipelineState.PAUSED
        logger.info("Playback paused")

    async def stop(self):
        self.state = PipelineState.STOPPED
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        self.release()

    def release(self):
        if self.cap is not None:
            self.cap.release()
            self.cap = None

    async def _loop(self):
        loop = asyncio.get_running_loop()
        while self.state == PipelineState.PLAYING:
            started = loop.time()

            ok, frame = self.cap.read() if self.cap is not None else (False, None)
            if not ok or frame is None:
                self._on_ended()
                break

            await self._process(frame)

            delay = max(0.0, 1.0 / self.fps - (loop.time() - started))
            await asyncio.sleep(delay)

    async def _process(self, frame: np.ndarray):
        self.frame_state.raw_frame = frame
        self.frame_state.frame_index += 1

        try:
            detections = await self._detect(frame)
        except Exception as e:
            self._on_detection_error(e)
        else:
            if self.state == PipelineState.STOPPED:
                return
            self.consecutive_failures = 0
            self.frame_state.faces = self.tracker.track(
                [d.box for d in detections], self.frame_state.faces
            )

        if self.state == PipelineState.STOPPED:
            return
        self.recomposite()

    def _on_detection_error(self, error: Exception):
        self.consecutive_failures += 1
        logger.warning(
            f"Detection failed on frame {self.frame_state.frame_index} "
            f"({self.consecutive_failures} in a row): {error}"
        )

        policy = settings.pipeline.on_detection_error
        if policy == "abort" or self.consecutive_failures >= settings.pipeline.max_consecutive_failures:
            self.state = PipelineState.FAILED
            self.error = f"Detection failed: {error}"
            logger.error(f"Video pipeline stopped after detection failure: {error}")

    def _on_ended(self):
        self.state = PipelineState.ENDED
        logger.info(f"Video ended after {self.frame_state.frame_index} frames")
        for callback in self.ended_callbacks:
            try:
                callback(self)
            except Exception as e:
                logger.error(f"End-of-video callback failed: {e}")

    def _rewind(self):
        if self.cap is not None:
            self.cap.set(cv2.CAP_PROP_POS_FRAMES, 0)
        self.frame_state.frame_index = 0
