from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    version: str
    detector_ready: bool


class BoundingBoxModel(BaseModel):
    x: int
    y: int
    width: int
    height: int


class FaceModel(BaseModel):
    face_id: int
    box: BoundingBoxModel
    mosaic_enabled: bool


class SessionResponse(BaseModel):
    session_id: str
    kind: str
    source_name: str
    state: str
    width: int
    height: int
    frame_index: int
    faces: list[FaceModel]
    recording: bool
    recording_available: bool
    error: Optional[str] = None
    created_at: datetime


class FrameResponse(BaseModel):
    session_id: str
    state: str
    frame_index: int
    frame: Optional[str]
    faces: list[FaceModel]


class ClickRequest(BaseModel):
    x: float = Field(..., ge=0)
    y: float = Field(..., ge=0)
    display_width: float = Field(..., gt=0)
    display_height: float = Field(..., gt=0)


class ClickResponse(BaseModel):
    session_id: str
    toggled: list[int]
    faces: list[FaceModel]
