import asyncio
import time

import pytest

from conftest import FakeDetector, write_test_video
from facemosaic.services.frame_pipeline import PipelineState, PipelineStateError
from facemosaic.services.recorder import FrameRecorder
from facemosaic.services.session_service import SessionModeError, SessionService

EBML_MAGIC = b"\x1a\x45\xdf\xa3"


@pytest.fixture
def service(tmp_path) -> SessionService:
    service = SessionService()
    service.upload_dir = tmp_path / "uploads"
    return service


@pytest.fixture
def slow_stop(monkeypatch):
    """Makes finalizing a take take at least half a second."""
    original_stop = FrameRecorder.stop

    def stop(self):
        time.sleep(0.5)
        return original_stop(self)

    monkeypatch.setattr(FrameRecorder, "stop", stop)


async def _with_max_loop_gap(awaitable):
    """Await `awaitable` while measuring the longest stall of the event loop."""
    loop = asyncio.get_running_loop()
    finished = asyncio.Event()
    gaps = [0.0]

    async def ticker():
        last = loop.time()
        while not finished.is_set():
            await asyncio.sleep(0.005)
            now = loop.time()
            gaps.append(now - last)
            last = now

    task = asyncio.create_task(ticker())
    try:
        result = await awaitable
    finally:
        finished.set()
        await task
    return result, max(gaps)


async def _video_session(service, tmp_path, face_box, frames=6):
    path = write_test_video(tmp_path / "clip.avi", frames=frames)
    return await service.create_from_upload(
        "clip.avi", "video/x-msvideo", path.read_bytes(), FakeDetector([face_box])
    )


def test_stop_recording_does_not_block_event_loop(service, tmp_path, face_box, slow_stop):
    async def scenario():
        session = await _video_session(service, tmp_path, face_box, frames=60)
        sid = session.session_id
        await service.start_recording(sid)
        await asyncio.sleep(0.1)
        service.pause(sid)

        started = time.monotonic()
        _, max_gap = await _with_max_loop_gap(service.stop_recording(sid))
        elapsed = time.monotonic() - started

        await service.shutdown()
        return session, elapsed, max_gap

    session, elapsed, max_gap = asyncio.run(scenario())

    assert elapsed >= 0.5
    assert max_gap < 0.2
    assert not session.is_recording
    assert session.recording.startswith(EBML_MAGIC)


def test_recording_finishes_in_background_when_video_ends(service, tmp_path, face_box, slow_stop):
    async def scenario():
        session = await _video_session(service, tmp_path, face_box)
        await service.start_recording(session.session_id)

        async def until_finished():
            while session.finish_task is None:
                await asyncio.sleep(0.01)
            await session.finish_task

        _, max_gap = await _with_max_loop_gap(until_finished())
        ended_state = session.pipeline.state
        exported = service.export(session.session_id)
        await service.shutdown()
        return session, ended_state, max_gap, exported

    session, ended_state, max_gap, (content, media_type, filename) = asyncio.run(scenario())

    assert ended_state == PipelineState.ENDED
    assert max_gap < 0.2
    assert session.recording.startswith(EBML_MAGIC)
    assert content == session.recording
    assert (media_type, filename) == ("video/webm", "mosaic-video.webm")


def test_stop_without_recording_raises(service, tmp_path, face_box):
    async def scenario():
        session = await _video_session(service, tmp_path, face_box)
        try:
            with pytest.raises(SessionModeError):
                await service.stop_recording(session.session_id)
        finally:
            await service.shutdown()

    asyncio.run(scenario())


def test_cannot_record_failed_video(service, tmp_path, face_box):
    async def scenario():
        session = await _video_session(service, tmp_path, face_box)
        session.pipeline.state = PipelineState.FAILED
        try:
            with pytest.raises(PipelineStateError):
                await service.start_recording(session.session_id)
            assert not session.is_recording
        finally:
            await service.shutdown()

    asyncio.run(scenario())


def test_delete_while_recording_finalizes_and_cleans_up(service, tmp_path, face_box):
    async def scenario():
        session = await _video_session(service, tmp_path, face_box, frames=60)
        await service.start_recording(session.session_id)
        await asyncio.sleep(0.1)
        await service.delete_session(session.session_id)
        return session

    session = asyncio.run(scenario())

    assert session.finish_task.done()
    assert not session.is_recording
    assert session.session_id not in service.sessions
    assert not session.upload_path.exists()
