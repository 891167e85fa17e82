import logging
from typing import Optional

import numpy as np

from facemosaic.core.config import settings
from facemosaic.models.faces import BoundingBox, Detection

logger = logging.getLogger(__name__)


class DetectorLoadError(RuntimeError):
    pass


class FaceDetector:
    """
    InsightFace detection model; must be initialized before the first detect().

    Two FaceAnalysis instances share one model pack: a detection-only one for
    video frames and one that also runs the 106-point landmark model, used
    only when landmarks are requested.
    """

    def __init__(self):
        self.app = None
        self.landmark_app = None
        self.model_pack: Optional[str] = None
        self.initialized = False

    def initialize(self):
        if self.initialized:
            logger.warning("FaceDetector already initialized")
            return

        logger.info("Initializing FaceDetector...")

        try:
            from insightface.app import FaceAnalysis
        except ImportError as e:
            raise DetectorLoadError(f"insightface is not available: {e}") from e

        providers = ["CPUExecutionProvider"]
        if settings.detector.device == "gpu":
            providers = ["CUDAExecutionProvider", "CPUExecutionProvider"]

        det_w, det_h = settings.detector.det_size
        errors = []
        for pack in (settings.detector.model_pack, settings.detector.fallback_model_pack):
            if not pack:
                continue
            try:
                app = FaceAnalysis(name=pack, allowed_modules=["detection"], providers=providers)
                app.prepare(ctx_id=-1, det_size=(det_w, det_h))
                landmark_app = FaceAnalysis(
                    name=pack,
                    allowed_modules=["detection", "landmark_2d_106"],
                    providers=providers,
                )
                landmark_app.prepare(ctx_id=-1, det_size=(det_w, det_h))
            except Exception as e:
                logger.warning(f"Model pack {pack} unavailable: {e}")
                errors.append(f"{pack}: {e}")
                continue

            self.app = app
            self.landmark_app = landmark_app
            self.model_pack = pack
            self.initialized = True
            logger.info(f"FaceDetector initialized with {pack}")
            return

        raise DetectorLoadError("Failed to load face detection model (" + "; ".join(errors) + ")")

    def detect(self, frame: np.ndarray, with_landmarks: bool = False) -> list[Detection]:
        if not self.initialized or self.app is None:
            raise RuntimeError("FaceDetector not initialized")

        analysis = self.landmark_app if with_landmarks else self.app
        h, w = frame.shape[:2]
        detections = []
        for face in analysis.get(frame):
            score = float(face.det_score) if face.det_score is not None else 0.0
            if score < settings.detector.min_detection_score:
                continue

            x1, y1, x2, y2 = face.bbox.tolist()
            box = BoundingBox.from_corners(x1, y1, x2, y2).clip(w, h)
            if box.width == 0 or box.height == 0:
                continue

            landmarks = None
            if with_landmarks:
                landmarks = getattr(face, "landmark_2d_106", None)
                if landmarks is None:
                    landmarks = getattr(face, "kps", None)

            detections.append(Detection(box=box, score=score, landmarks=landmarks))

        return detections

    def cleanup(self):
        logger.info("Cleaning up FaceDetector...")
        self.app = None
        self.landmark_app = None
        self.initialized = False
