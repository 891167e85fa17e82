"""
Face data structures shared by the detector, tracker, compositor and API.

Boxes are always in source-frame pixel coordinates, never display coordinates.
"""

import itertools
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

_face_ids = itertools.count(1)


def next_face_id() -> int:
    return next(_face_ids)


@dataclass(frozen=True)
class BoundingBox:
    x: int
    y: int
    width: int
    height: int

    @classmethod
    def from_corners(cls, x1: float, y1: float, x2: float, y2: float) -> "BoundingBox":
        left, top = int(round(x1)), int(round(y1))
        right, bottom = int(round(x2)), int(round(y2))
        return cls(left, top, max(0, right - left), max(0, bottom - top))

    @property
    def center(self) -> tuple[float, float]:
        return self.x + self.width / 2.0, self.y + self.height / 2.0

    def contains(self, px: float, py: float) -> bool:
        return self.x <= px <= self.x + self.width and self.y <= py <= self.y + self.height

    def clip(self, frame_width: int, frame_height: int) -> "BoundingBox":
        x1 = min(max(self.x, 0), frame_width)
        y1 = min(max(self.y, 0), frame_height)
        x2 = min(max(self.x + self.width, 0), frame_width)
        y2 = min(max(self.y + self.height, 0), frame_height)
        return BoundingBox(x1, y1, max(0, x2 - x1), max(0, y2 - y1))

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass
class Detection:
    box: BoundingBox
    score: float = 1.0
    landmarks: Optional[np.ndarray] = None


@dataclass
class TrackedFace:
    box: BoundingBox
    mosaic_enabled: bool = True
    face_id: int = field(default_factory=next_face_id)

    def toggle(self) -> bool:
        self.mosaic_enabled = not self.mosaic_enabled
        return self.mosaic_enabled

    def to_dict(self) -> dict:
        return {
            "face_id": self.face_id,
            "box": self.box.to_dict(),
            "mosaic_enabled": self.mosaic_enabled,
        }
