import logging
import math
from typing import Optional, Sequence

from facemosaic.core.config import settings
from facemosaic.models.faces import BoundingBox, TrackedFace

logger = logging.getLogger(__name__)


def center_distance(a: BoundingBox, b: BoundingBox) -> float:
    ax, ay = a.center
    bx, by = b.center
    return math.hypot(ax - bx, ay - by)


class FaceTracker:
    """
    Carries per-face mosaic toggles from one frame to the next.

    Each new detection is matched greedily to the previous face with the
    nearest center; the match is accepted when the distance is below
    max(width, height) * match_factor of the new detection. Matched faces keep
    their toggle and id, everything else starts with the mosaic on.

    With exclusive_matching a previous face can be claimed only once, so the
    output is a one-to-one mapping. Without it the same previous face may be
    claimed by several detections and its toggle is copied onto each of them.
    """

    def __init__(
        self,
        match_factor: Optional[float] = None,
        exclusive_matching: Optional[bool] = None,
    ):
        self.match_factor = (
            settings.tracker.match_factor if match_factor is None else match_factor
        )
        self.exclusive_matching = (
            settings.tracker.exclusive_matching
            if exclusive_matching is None
            else exclusive_matching
        )

    def threshold_for(self, box: BoundingBox) -> float:
        return max(box.width, box.height) * self.match_factor

    def track(
        self,
        detections: Sequence[BoundingBox],
        previous: Sequence[TrackedFace],
    ) -> list[TrackedFace]:
        candidates = list(previous)
        tracked: list[TrackedFace] = []

        for box in detections:
            closest: Optional[TrackedFace] = None
            min_dist = math.inf

            for face in candidates:
                dist = center_distance(box, face.box)
                if dist < min_dist:
                    min_dist = dist
                    closest = face

            if closest is not None and min_dist < self.threshold_for(box):
                tracked.append(
                    TrackedFace(
                        box=box,
                        mosaic_enabled=closest.mosaic_enabled,
                        face_id=closest.face_id,
                    )
                )
                if self.exclusive_matching:
                    candidates = [face for face in candidates if face is not closest]
            else:
                tracked.append(TrackedFace(box=box))

        dropped = len(previous) - len({face.face_id for face in tracked} & {f.face_id for f in previous})
        if dropped > 0:
            logger.debug(f"Dropped {dropped} face(s) with no matching detection")

        return tracked
