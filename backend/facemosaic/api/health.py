from datetime import datetime

from fastapi import APIRouter, Request

from facemosaic.core.config import settings
from facemosaic.models.schemas import HealthResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    detector = getattr(request.app.state, "face_detector", None)
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(),
        version=settings.app.version,
        detector_ready=bool(detector is not None and detector.initialized),
    )
