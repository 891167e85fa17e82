import asyncio
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

import cv2
import numpy as np

from facemosaic.core.config import settings
from facemosaic.services.frame_pipeline import (
    ImagePipeline,
    InvalidMediaError,
    PipelineState,
    PipelineStateError,
    VideoPipeline,
)
from facemosaic.services.interaction import handle_click
from facemosaic.services.recorder import FrameRecorder, RecorderError

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".bmp", ".webp", ".tif", ".tiff"}
VIDEO_EXTENSIONS = {".mp4", ".m4v", ".mov", ".webm", ".mkv", ".avi"}


class SessionNotFoundError(LookupError):
    pass


class SessionModeError(RuntimeError):
    pass


class MosaicSession:
    def __init__(
        self,
        kind: str,
        pipeline: Union[ImagePipeline, VideoPipeline],
        source_name: str,
        upload_path: Optional[Path] = None,
        session_id: Optional[str] = None,
    ):
        self.session_id = session_id or str(uuid.uuid4())
        self.kind = kind
        self.pipeline = pipeline
        self.source_name = source_name
        self.upload_path = upload_path
        # set only while a take is running; detached before it is finalized
        self.recorder: Optional[FrameRecorder] = None
        self.finish_task: Optional[asyncio.Task] = None
        self.recording: Optional[bytes] = None
        self.recording_mime: Optional[str] = None
        self.recording_ext: Optional[str] = None
        self.created_at = datetime.now()

    @property
    def is_recording(self) -> bool:
        return self.recorder is not None

    def summary(self) -> dict:
        pipeline = self.pipeline
        return {
            "session_id": self.session_id,
            "kind": self.kind,
            "source_name": self.source_name,
            "state": pipeline.state.value,
            "width": pipeline.width,
            "height": pipeline.height,
            "frame_index": pipeline.frame_state.frame_index,
            "faces": [face.to_dict() for face in pipeline.faces],
            "recording": self.is_recording,
            "recording_available": self.recording is not None,
            "error": pipeline.error,
            "created_at": self.created_at,
        }


class SessionService:
    def __init__(self):
        self.sessions: dict[str, MosaicSession] = {}
        self.upload_dir = Path(settings.storage.upload_dir)

    def classify(self, filename: str, content_type: Optional[str]) -> str:
        if content_type:
            if content_type.startswith("image/"):
                return "image"
            if content_type.startswith("video/"):
                return "video"

        ext = Path(filename or "").suffix.lower()
        if ext in IMAGE_EXTENSIONS:
            return "image"
        if ext in VIDEO_EXTENSIONS:
            return "video"
        raise InvalidMediaError(f"Unsupported file type: {filename or content_type}")

    async def create_from_upload(
        self,
        filename: str,
        content_type: Optional[str],
        data: bytes,
        detector,
    ) -> MosaicSession:
        if not data:
            raise InvalidMediaError("Uploaded file is empty")
        max_bytes = settings.storage.max_upload_mb * 1024 * 1024
        if len(data) > max_bytes:
            raise InvalidMediaError(f"Uploaded file exceeds {settings.storage.max_upload_mb} MB")

        kind = self.classify(filename, content_type)
        if kind == "image":
            session = await self._create_image_session(filename, data, detector)
        else:
            session = await self._create_video_session(filename, data, detector)

        self.sessions[session.session_id] = session
        logger.info(
            f"Created {kind} session {session.session_id} for {filename} "
            f"({len(session.pipeline.faces)} face(s))"
        )
        return session

    async def _create_image_session(self, filename: str, data: bytes, detector) -> MosaicSession:
        img_array = np.frombuffer(data, dtype=np.uint8)
        image = cv2.imdecode(img_array, cv2.IMREAD_COLOR)
        if image is None:
            raise InvalidMediaError(f"Could not decode image: {filename}")

        pipeline = ImagePipeline(detector, image)
        await pipeline.run()
        return MosaicSession("image", pipeline, filename)

    async def _create_video_session(self, filename: str, data: bytes, detector) -> MosaicSession:
        session_id = str(uuid.uuid4())
        ext = Path(filename or "").suffix.lower() or ".mp4"
        self.upload_dir.mkdir(parents=True, exist_ok=True)
        upload_path = self.upload_dir / f"{session_id}{ext}"
        upload_path.write_bytes(data)

        pipeline = VideoPipeline(detector, str(upload_path))
        try:
            await pipeline.load()
        except Exception:
            upload_path.unlink(missing_ok=True)
            raise

        session = MosaicSession("video", pipeline, filename, upload_path=upload_path, session_id=session_id)
        pipeline.ended_callbacks.append(lambda _: self._on_video_ended(session))
        return session

    def get_session(self, session_id: str) -> MosaicSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return session

    def _video_pipeline(self, session: MosaicSession) -> VideoPipeline:
        if session.kind != "video":
            raise SessionModeError("Operation is only available for video sessions")
        return session.pipeline

    def play(self, session_id: str) -> MosaicSession:
        session = self.get_session(session_id)
        self._video_pipeline(session).play()
        return session

    def pause(self, session_id: str) -> MosaicSession:
        session = self.get_session(session_id)
        self._video_pipeline(session).pause()
        return session

    def toggle_playback(self, session_id: str) -> MosaicSession:
        session = self.get_session(session_id)
        pipeline = self._video_pipeline(session)
        if pipeline.is_playing:
            pipeline.pause()
        else:
            pipeline.play()
        return session

    def click(
        self,
        session_id: str,
        x: float,
        y: float,
        display_width: float,
        display_height: float,
    ) -> tuple[MosaicSession, list[int]]:
        session = self.get_session(session_id)
        toggled = handle_click(session.pipeline, x, y, display_width, display_height)
        return session, toggled

    def toggle_face(self, session_id: str, face_id: int) -> MosaicSession:
        session = self.get_session(session_id)
        face = session.pipeline.get_face(face_id)
        if face is None:
            raise SessionNotFoundError(f"Face {face_id} is not in the current frame")
        face.toggle()
        if not session.pipeline.is_playing:
            session.pipeline.recomposite()
        return session

    async def start_recording(self, session_id: str) -> MosaicSession:
        session = self.get_session(session_id)
        pipeline = self._video_pipeline(session)
        if session.is_recording:
            logger.warning(f"Session {session_id} is already recording")
            return session
        if session.finish_task is not None and not session.finish_task.done():
            raise SessionModeError("Previous recording is still being finalized")
        if pipeline.state in (PipelineState.STOPPED, PipelineState.FAILED):
            raise PipelineStateError(f"Cannot record a {pipeline.state.value} video")

        recorder = FrameRecorder()
        session.recorder = recorder
        try:
            await asyncio.to_thread(recorder.start, pipeline.width, pipeline.height)
        except Exception:
            session.recorder = None
            raise

        session.recording = None
        pipeline.recorder = recorder
        # an ended video restarts from frame 0; its last frame is not part of the take
        if pipeline.state != PipelineState.ENDED and pipeline.frame_state.output_frame is not None:
            recorder.submit(pipeline.frame_state.output_frame)

        if not pipeline.is_playing:
            pipeline.play()
        return session

    async def stop_recording(self, session_id: str) -> MosaicSession:
        session = self.get_session(session_id)
        self._video_pipeline(session)
        if not session.is_recording:
            raise SessionModeError("Session is not recording")
        if not await self._begin_finish(session):
            raise RecorderError("Recording could not be finalized")
        return session

    async def toggle_recording(self, session_id: str) -> MosaicSession:
        session = self.get_session(session_id)
        if session.is_recording:
            return await self.stop_recording(session_id)
        return await self.start_recording(session_id)

    def export(self, session_id: str) -> tuple[bytes, str, str]:
        session = self.get_session(session_id)
        if session.kind == "image":
            return session.pipeline.encode_output(".png"), "image/png", "mosaic-image.png"

        if session.recording is None:
            raise SessionModeError("No finished recording to download")
        ext = session.recording_ext or "webm"
        return session.recording, session.recording_mime or "video/webm", f"mosaic-video.{ext}"

    async def delete_session(self, session_id: str):
        session = self.get_session(session_id)
        await self._close(session)
        del self.sessions[session_id]
        logger.info(f"Deleted session {session_id}")

    async def shutdown(self):
        for session_id in list(self.sessions):
            await self.delete_session(session_id)

    async def _close(self, session: MosaicSession):
        if session.kind == "video":
            await session.pipeline.stop()
        if session.is_recording:
            self._begin_finish(session)
        if session.finish_task is not None:
            await session.finish_task
        if session.upload_path is not None:
            session.upload_path.unlink(missing_ok=True)

    def _begin_finish(self, session: MosaicSession) -> asyncio.Task:
        recorder = session.recorder
        session.pipeline.recorder = None
        session.recorder = None
        session.finish_task = asyncio.get_running_loop().create_task(
            self._finish_recording(session, recorder)
        )
        return session.finish_task

    async def _finish_recording(self, session: MosaicSession, recorder: FrameRecorder) -> bool:
        try:
            # joining the sampler and flushing the encoder happen off the event loop
            data = await asyncio.to_thread(recorder.stop)
        except Exception as e:
            logger.error(f"Failed to finish recording of session {session.session_id}: {e}")
            return False

        session.recording = data
        session.recording_mime = recorder.mime_type
        session.recording_ext = recorder.container_format
        return True

    def _on_video_ended(self, session: MosaicSession):
        if session.pipeline.state == PipelineState.ENDED and session.is_recording:
            logger.info(f"Video ended, finishing recording for session {session.session_id}")
            self._begin_finish(session)


session_service = SessionService()
