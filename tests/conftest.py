import threading
from pathlib import Path
from typing import Callable, Sequence, Union

import cv2
import numpy as np
import pytest

from facemosaic.models.faces import BoundingBox, Detection


class FakeDetector:
    """Scripted stand-in for the InsightFace detector.

    `script` is either one list of boxes returned for every frame, a list of
    per-call lists (the last one repeats), or a callable taking the call index.
    An Exception instance in the script is raised instead of returned.
    """

    def __init__(self, script: Union[Sequence, Callable, None] = None, per_call: bool = False):
        self.script = script if script is not None else []
        self.per_call = per_call
        self.calls = 0
        self.landmark_requests = 0
        self.initialized = True
        self._lock = threading.Lock()

    def _boxes_for(self, index: int):
        if callable(self.script):
            return self.script(index)
        if self.per_call:
            if not self.script:
                return []
            return self.script[min(index, len(self.script) - 1)]
        return self.script

    def detect(self, frame: np.ndarray, with_landmarks: bool = False) -> list[Detection]:
        with self._lock:
            index = self.calls
            self.calls += 1
            if with_landmarks:
                self.landmark_requests += 1

        boxes = self._boxes_for(index)
        if isinstance(boxes, Exception):
            raise boxes

        detections = []
        for box in boxes:
            landmarks = None
            if with_landmarks:
                cx, cy = box.center
                landmarks = np.array([[cx - 5, cy - 5], [cx + 5, cy - 5]], dtype=np.float32)
            detections.append(Detection(box=box, score=0.9, landmarks=landmarks))
        return detections

    def cleanup(self):
        self.initialized = False


def noisy_frame(width: int = 320, height: int = 240, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8)


def write_test_video(path: Path, frames: int = 6, width: int = 320, height: int = 240, fps: float = 30.0) -> Path:
    writer = cv2.VideoWriter(str(path), cv2.VideoWriter_fourcc(*"MJPG"), fps, (width, height))
    assert writer.isOpened()
    for i in range(frames):
        writer.write(noisy_frame(width, height, seed=i))
    writer.release()
    return path


@pytest.fixture
def face_box() -> BoundingBox:
    return BoundingBox(100, 100, 50, 50)


@pytest.fixture
def frame() -> np.ndarray:
    return noisy_frame()


@pytest.fixture
def video_file(tmp_path) -> Path:
    return write_test_video(tmp_path / "clip.avi")

