import base64
import logging

from fastapi import APIRouter, File, HTTPException, Request, Response, UploadFile

from facemosaic.models.schemas import ClickRequest, ClickResponse, FrameResponse, SessionResponse
from facemosaic.services.frame_pipeline import InvalidMediaError, PipelineStateError
from facemosaic.services.recorder import RecorderError
from facemosaic.services.session_service import (
    SessionModeError,
    SessionNotFoundError,
    session_service,
)

logger = logging.getLogger(__name__)
router = APIRouter()


def _error_response(e: Exception) -> HTTPException:
    if isinstance(e, HTTPException):
        return e
    if isinstance(e, SessionNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, InvalidMediaError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, (SessionModeError, PipelineStateError)):
        return HTTPException(status_code=409, detail=str(e))
    logger.error(f"Session request failed: {e}")
    return HTTPException(status_code=500, detail=str(e))


@router.post("", response_model=SessionResponse)
async def create_session(request: Request, file: UploadFile = File(...)):
    """Upload a photo or video and run face detection on it."""
    detector = request.app.state.face_detector

    try:
        data = await file.read()
        session = await session_service.create_from_upload(
            filename=file.filename or "",
            content_type=file.content_type,
            data=data,
            detector=detector,
        )
        return SessionResponse(**session.summary())
    except Exception as e:
        raise _error_response(e)


@router.get("/{session_id}", response_model=SessionResponse)
async def get_session(session_id: str):
    try:
        return SessionResponse(**session_service.get_session(session_id).summary())
    except Exception as e:
        raise _error_response(e)


@router.get("/{session_id}/frame", response_model=FrameResponse)
async def get_frame(session_id: str):
    try:
        session = session_service.get_session(session_id)
        pipeline = session.pipeline
        frame = None
        if pipeline.frame_state.output_frame is not None:
            frame_base64 = base64.b64encode(pipeline.encode_output(".jpg")).decode("utf-8")
            frame = f"data:image/jpeg;base64,{frame_base64}"

        return FrameResponse(
            session_id=session.session_id,
            state=pipeline.state.value,
            frame_index=pipeline.frame_state.frame_index,
            frame=frame,
            faces=[face.to_dict() for face in pipeline.faces],
        )
    except Exception as e:
        raise _error_response(e)


@router.post("/{session_id}/playback/{action}", response_model=SessionResponse)
async def control_playback(session_id: str, action: str):
    actions = {
        "play": session_service.play,
        "pause": session_service.pause,
        "toggle": session_service.toggle_playback,
    }
    if action not in actions:
        raise HTTPException(status_code=404, detail=f"Unknown playback action: {action}")

    try:
        return SessionResponse(**actions[action](session_id).summary())
    except Exception as e:
        raise _error_response(e)


@router.post("/{session_id}/click", response_model=ClickResponse)
async def click(session_id: str, data: ClickRequest):
    try:
        session, toggled = session_service.click(
            session_id, data.x, data.y, data.display_width, data.display_height
        )
        return ClickResponse(
            session_id=session.session_id,
            toggled=toggled,
            faces=[face.to_dict() for face in session.pipeline.faces],
        )
    except Exception as e:
        raise _error_response(e)


@router.post("/{session_id}/faces/{face_id}/toggle", response_model=SessionResponse)
async def toggle_face(session_id: str, face_id: int):
    try:
        return SessionResponse(**session_service.toggle_face(session_id, face_id).summary())
    except Exception as e:
        raise _error_response(e)


@router.post("/{session_id}/recording/{action}", response_model=SessionResponse)
async def control_recording(session_id: str, action: str):
    actions = {
        "start": session_service.start_recording,
        "stop": session_service.stop_recording,
        "toggle": session_service.toggle_recording,
    }
    if action not in actions:
        raise HTTPException(status_code=404, detail=f"Unknown recording action: {action}")

    try:
        session = await actions[action](session_id)
        return SessionResponse(**session.summary())
    except RecorderError as e:
        logger.error(f"Recorder unavailable for session {session_id}: {e}")
        raise HTTPException(status_code=500, detail=str(e))
    except Exception as e:
        raise _error_response(e)


@router.get("/{session_id}/download")
async def download(session_id: str):
    try:
        content, media_type, filename = session_service.export(session_id)
    except Exception as e:
        raise _error_response(e)

    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.delete("/{session_id}")
async def delete_session(session_id: str):
    try:
        await session_service.delete_session(session_id)
    except Exception as e:
        raise _error_response(e)
    return {"message": "Session deleted successfully"}
