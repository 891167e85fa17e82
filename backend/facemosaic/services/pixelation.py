"""
Pixelation strategies.

Every strategy reads a rectangle of the source frame and returns a new buffer
of the same shape as the (clipped) rectangle. The source frame is never
written to; compositing the result back is the compositor's job.
"""

import logging
import math
from enum import Enum
from typing import Optional

import cv2
import numpy as np

from facemosaic.core.config import settings
from facemosaic.models.faces import BoundingBox

logger = logging.getLogger(__name__)


class PixelationStrategy(str, Enum):
    SHRINK_EXPAND = "shrink_expand"
    BLOCK_SAMPLE = "block_sample"


def crop_region(frame: np.ndarray, box: BoundingBox) -> tuple[BoundingBox, np.ndarray]:
    """Clip box to the frame and return it with a read-only view of the region."""
    h, w = frame.shape[:2]
    clipped = box.clip(w, h)
    region = frame[clipped.y : clipped.y + clipped.height, clipped.x : clipped.x + clipped.width]
    return clipped, region


class ShrinkExpandPixelator:
    """Smoothed downsample followed by nearest-neighbour magnification."""

    strategy = PixelationStrategy.SHRINK_EXPAND

    def __init__(self, shrink_factor: Optional[float] = None):
        factor = settings.mosaic.shrink_factor if shrink_factor is None else shrink_factor
        if not 0.0 < factor <= 1.0:
            raise ValueError(f"shrink_factor must be in (0, 1], got {factor}")
        self.shrink_factor = factor

    def pixelate(self, region: np.ndarray) -> np.ndarray:
        h, w = region.shape[:2]
        if h == 0 or w == 0:
            return region.copy()

        sw = max(1, math.ceil(w * self.shrink_factor))
        sh = max(1, math.ceil(h * self.shrink_factor))

        small = cv2.resize(region, (sw, sh), interpolation=cv2.INTER_AREA)
        return cv2.resize(small, (w, h), interpolation=cv2.INTER_NEAREST)


class BlockSamplePixelator:
    """
    Fills a grid of block_size x block_size cells with one color each.

    Cells on the right and bottom edges are clipped to the region. By default
    each cell takes the color of its center pixel; with average=True it takes
    the mean of all pixels in the cell.
    """

    strategy = PixelationStrategy.BLOCK_SAMPLE

    def __init__(self, block_size: Optional[int] = None, average: Optional[bool] = None):
        size = settings.mosaic.block_size if block_size is None else block_size
        if size < 1:
            raise ValueError(f"block_size must be positive, got {size}")
        self.block_size = int(size)
        self.average = settings.mosaic.average_blocks if average is None else average

    def pixelate(self, region: np.ndarray) -> np.ndarray:
        h, w = region.shape[:2]
        out = np.empty_like(region)
        if h == 0 or w == 0:
            return out

        bs = self.block_size
        for y in range(0, h, bs):
            cell_h = min(bs, h - y)
            for x in range(0, w, bs):
                cell_w = min(bs, w - x)
                cell = region[y : y + cell_h, x : x + cell_w]
                if self.average:
                    color = cell.reshape(-1, *cell.shape[2:]).mean(axis=0).round()
                else:
                    color = cell[cell_h // 2, cell_w // 2]
                out[y : y + cell_h, x : x + cell_w] = color

        return out


def create_pixelator(strategy: PixelationStrategy):
    if strategy == PixelationStrategy.SHRINK_EXPAND:
        return ShrinkExpandPixelator()
    if strategy == PixelationStrategy.BLOCK_SAMPLE:
        return BlockSamplePixelator()
    raise ValueError(f"Unknown pixelation strategy: {strategy}")
