import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from facemosaic.api import health, sessions
from facemosaic.core.config import settings
from facemosaic.services.face_detector import DetectorLoadError, FaceDetector
from facemosaic.services.session_service import session_service
from facemosaic.utils.logger import setup_logging

setup_logging(log_level=settings.app.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Face Mosaic Studio...")
    face_detector = FaceDetector()
    try:
        face_detector.initialize()
    except DetectorLoadError as e:
        logger.critical(f"Face detection model failed to load, aborting startup: {e}")
        raise
    app.state.face_detector = face_detector
    logger.info("System ready")
    yield
    logger.info("Shutting down...")
    await session_service.shutdown()
    face_detector.cleanup()
    logger.info("Shutdown complete")


def create_app(lifespan_handler=lifespan) -> FastAPI:
    app = FastAPI(
        title=settings.app.name,
        version=settings.app.version,
        lifespan=lifespan_handler,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router, prefix="/api", tags=["health"])
    app.include_router(sessions.router, prefix="/api/sessions", tags=["sessions"])
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.app.host,
        port=settings.app.port,
        reload=settings.app.debug,
    )
