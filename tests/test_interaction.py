import asyncio
import threading

import numpy as np
import pytest

from conftest import FakeDetector, write_test_video
from facemosaic.models.faces import BoundingBox, TrackedFace
from facemosaic.services.frame_pipeline import ImagePipeline, PipelineState, VideoPipeline
from facemosaic.services.interaction import faces_at, handle_click, to_buffer_point


def _image_pipeline(frame, boxes):
    pipeline = ImagePipeline(FakeDetector(boxes), frame)
    asyncio.run(pipeline.run())
    return pipeline


def test_point_mapping_identity():
    assert to_buffer_point(120, 80, (320, 240), (320, 240)) == (120, 80)


def test_point_mapping_scales_to_buffer():
    # element shown at half size: a click at (60, 40) is (120, 80) in the buffer
    assert to_buffer_point(60, 40, (160, 120), (320, 240)) == (120, 80)


@pytest.mark.parametrize("display", [(0, 240), (320, 0), (-1, 10)])
def test_point_mapping_rejects_degenerate_display(display):
    with pytest.raises(ValueError):
        to_buffer_point(10, 10, display, (320, 240))


def test_faces_at_is_inclusive_on_edges():
    face = TrackedFace(BoundingBox(10, 10, 20, 20))
    assert faces_at([face], 10, 10) == [face]
    assert faces_at([face], 30, 30) == [face]
    assert faces_at([face], 30.5, 20) == []


def test_click_inside_face_toggles_and_recomposites(frame):
    pipeline = _image_pipeline(frame, [BoundingBox(100, 60, 60, 60)])
    face = pipeline.faces[0]
    mosaicked = pipeline.frame_state.output_frame.copy()

    toggled = handle_click(pipeline, 65, 45, 160, 120)

    assert toggled == [face.face_id]
    assert face.mosaic_enabled is False
    assert np.array_equal(pipeline.frame_state.output_frame, frame)
    assert not np.array_equal(mosaicked, frame)


def test_second_click_restores_mosaic(frame):
    pipeline = _image_pipeline(frame, [BoundingBox(100, 60, 60, 60)])
    first = pipeline.frame_state.output_frame.copy()

    handle_click(pipeline, 130, 90, 320, 240)
    handle_click(pipeline, 130, 90, 320, 240)

    assert pipeline.faces[0].mosaic_enabled is True
    assert np.array_equal(pipeline.frame_state.output_frame, first)


def test_click_outside_faces_changes_nothing(frame):
    pipeline = _image_pipeline(frame, [BoundingBox(100, 60, 60, 60)])
    before = pipeline.frame_state.output_frame

    assert handle_click(pipeline, 10, 10, 320, 240) == []
    assert pipeline.faces[0].mosaic_enabled is True
    assert pipeline.frame_state.output_frame is before


def test_click_on_overlap_toggles_every_face(frame):
    pipeline = _image_pipeline(frame, [BoundingBox(50, 50, 100, 100), BoundingBox(120, 120, 80, 80)])

    toggled = handle_click(pipeline, 130, 130, 320, 240)

    assert toggled == [face.face_id for face in pipeline.faces]
    assert all(not face.mosaic_enabled for face in pipeline.faces)


def test_click_with_zero_display_size_raises(frame):
    pipeline = _image_pipeline(frame, [BoundingBox(100, 60, 60, 60)])
    with pytest.raises(ValueError):
        handle_click(pipeline, 10, 10, 0, 0)
    assert pipeline.faces[0].mosaic_enabled is True


def test_click_on_paused_video_recomposites_immediately(tmp_path, face_box):
    path = write_test_video(tmp_path / "long.avi", frames=60)
    pipeline = VideoPipeline(FakeDetector([face_box]), str(path))

    async def scenario():
        await pipeline.load()
        pipeline.play()
        await asyncio.sleep(0.1)
        pipeline.pause()
        # let the last tick finish
        await asyncio.sleep(0.1)

        before = pipeline.frame_state.output_frame
        cx, cy = face_box.center
        toggled = handle_click(pipeline, cx, cy, pipeline.width, pipeline.height)
        return before, toggled

    before, toggled = asyncio.run(scenario())

    box = face_box
    region = (slice(box.y, box.y + box.height), slice(box.x, box.x + box.width))
    assert pipeline.state == PipelineState.PAUSED
    assert toggled == [pipeline.faces[0].face_id]
    assert pipeline.frame_state.output_frame is not before
    assert np.array_equal(pipeline.frame_state.output_frame[region], pipeline.frame_state.raw_frame[region])
    assert not np.array_equal(before[region], pipeline.frame_state.raw_frame[region])
    pipeline.release()


def test_click_during_detection_carries_into_next_frame(tmp_path, face_box):
    path = write_test_video(tmp_path / "long.avi", frames=60)
    detecting = threading.Event()
    release = threading.Event()

    def script(index):
        if index == 1:
            detecting.set()
            release.wait(timeout=5.0)
        return [face_box]

    pipeline = VideoPipeline(FakeDetector(script), str(path))

    async def scenario():
        await pipeline.load()
        face_id = pipeline.faces[0].face_id
        pipeline.play()
        try:
            while not detecting.is_set():
                await asyncio.sleep(0.005)
            cx, cy = face_box.center
            toggled = handle_click(pipeline, cx, cy, pipeline.width, pipeline.height)
        finally:
            release.set()

        deadline = asyncio.get_running_loop().time() + 5.0
        while pipeline.frame_state.frame_index < 3:
            assert asyncio.get_running_loop().time() < deadline, "playback stalled"
            await asyncio.sleep(0.005)
        pipeline.pause()
        await pipeline.stop()
        return face_id, toggled

    face_id, toggled = asyncio.run(scenario())

    assert toggled == [face_id]
    assert [f.face_id for f in pipeline.faces] == [face_id]
    assert pipeline.faces[0].mosaic_enabled is False
