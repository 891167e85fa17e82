import logging
from typing import Iterable

from facemosaic.models.faces import TrackedFace

logger = logging.getLogger(__name__)


def to_buffer_point(
    px: float,
    py: float,
    display_size: tuple[float, float],
    buffer_size: tuple[int, int],
) -> tuple[float, float]:
    """Map a point on the displayed element to output-buffer pixels."""
    display_w, display_h = display_size
    buffer_w, buffer_h = buffer_size
    if display_w <= 0 or display_h <= 0:
        raise ValueError(f"Display size must be positive, got {display_w}x{display_h}")
    return px * buffer_w / display_w, py * buffer_h / display_h


def faces_at(faces: Iterable[TrackedFace], x: float, y: float) -> list[TrackedFace]:
    return [face for face in faces if face.box.contains(x, y)]


def handle_click(pipeline, px: float, py: float, display_w: float, display_h: float) -> list[int]:
    """
    Toggle the mosaic of every face containing the clicked point.

    When the pipeline is not producing frames on its own (paused video or a
    still image) the output is re-composited right away.
    """
    x, y = to_buffer_point(px, py, (display_w, display_h), (pipeline.width, pipeline.height))

    toggled = []
    for face in faces_at(pipeline.faces, x, y):
        face.toggle()
        toggled.append(face.face_id)

    if toggled:
        logger.info(f"Click at ({x:.0f}, {y:.0f}) toggled face(s) {toggled}")
        if not pipeline.is_playing:
            pipeline.recomposite()

    return toggled
