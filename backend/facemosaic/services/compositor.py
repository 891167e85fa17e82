import logging
from typing import Iterable, Optional

import cv2
import numpy as np

from facemosaic.core.config import settings
from facemosaic.models.faces import BoundingBox, TrackedFace
from facemosaic.services.pixelation import crop_region

logger = logging.getLogger(__name__)


class MosaicCompositor:
    """Draws pixelated face regions back onto an output frame."""

    def __init__(
        self,
        ellipse_x_scale: Optional[float] = None,
        ellipse_y_scale: Optional[float] = None,
    ):
        self.ellipse_x_scale = (
            settings.mosaic.ellipse_x_scale if ellipse_x_scale is None else ellipse_x_scale
        )
        self.ellipse_y_scale = (
            settings.mosaic.ellipse_y_scale if ellipse_y_scale is None else ellipse_y_scale
        )

    def ellipse_mask(self, width: int, height: int) -> np.ndarray:
        mask = np.zeros((height, width), dtype=np.uint8)
        axes = (
            max(1, int(round(width / 2.0 * self.ellipse_x_scale))),
            max(1, int(round(height / 2.0 * self.ellipse_y_scale))),
        )
        cv2.ellipse(mask, (width // 2, height // 2), axes, 0, 0, 360, 255, -1)
        return mask.astype(bool)

    def composite(
        self,
        frame: np.ndarray,
        pixelated: np.ndarray,
        box: BoundingBox,
        elliptical: bool = True,
    ) -> None:
        """
        Writes pixelated into frame at box (already clipped to the frame).
        With elliptical=True only the pixels inside the inscribed ellipse change.
        """
        if box.width == 0 or box.height == 0:
            return
        if pixelated.shape[:2] != (box.height, box.width):
            raise ValueError(
                f"Pixelated buffer {pixelated.shape[:2]} does not match box "
                f"{(box.height, box.width)}"
            )

        target = frame[box.y : box.y + box.height, box.x : box.x + box.width]
        if elliptical:
            mask = self.ellipse_mask(box.width, box.height)
            target[mask] = pixelated[mask]
        else:
            target[...] = pixelated

    def render(
        self,
        source: np.ndarray,
        faces: Iterable[TrackedFace],
        pixelator,
        elliptical: bool = True,
    ) -> np.ndarray:
        output = source.copy()
        for face in faces:
            if not face.mosaic_enabled:
                continue
            box, region = crop_region(source, face.box)
            if region.size == 0:
                continue
            self.composite(output, pixelator.pixelate(region), box, elliptical=elliptical)
        return output
