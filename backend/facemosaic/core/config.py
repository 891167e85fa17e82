from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings


class AppConfig(BaseSettings):
    name: str = "Face Mosaic Studio"
    version: str = "1.0.0"
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    log_level: str = "INFO"


class DetectorConfig(BaseSettings):
    model_pack: str = "buffalo_l"
    fallback_model_pack: str = "buffalo_sc"
    det_size: list[int] = Field(default_factory=lambda: [640, 640])
    min_detection_score: float = 0.5
    device: str = "cpu"


class MosaicConfig(BaseSettings):
    # video: shrink/expand, image: block sampling
    shrink_factor: float = 0.1
    block_size: int = 15
    average_blocks: bool = False
    ellipse_x_scale: float = 0.8
    ellipse_y_scale: float = 1.0
    image_soft_edge: bool = False


class TrackerConfig(BaseSettings):
    match_factor: float = 1.5
    exclusive_matching: bool = True


class PipelineConfig(BaseSettings):
    on_detection_error: Literal["skip", "abort"] = "skip"
    max_consecutive_failures: int = 30
    default_fps: float = 30.0
    jpeg_quality: int = 85


class RecordingConfig(BaseSettings):
    fps: int = 30
    codec: str = "libvpx-vp9"
    fallback_codec: str = "libvpx"
    container_format: str = "webm"
    bit_rate: int = 2_500_000
    # libvpx speed settings so the sampler keeps up with the render loop
    encoder_options: dict[str, str] = Field(
        default_factory=lambda: {"deadline": "realtime", "cpu-used": "8"}
    )


class StorageConfig(BaseSettings):
    upload_dir: str = "data/uploads"
    max_upload_mb: int = 512


class Settings(BaseSettings):
    app: AppConfig = Field(default_factory=AppConfig)
    detector: DetectorConfig = Field(default_factory=DetectorConfig)
    mosaic: MosaicConfig = Field(default_factory=MosaicConfig)
    tracker: TrackerConfig = Field(default_factory=TrackerConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    recording: RecordingConfig = Field(default_factory=RecordingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> "Settings":
        with open(path, "r") as f:
            data: dict[str, Any] = yaml.safe_load(f) or {}

        return cls(
            app=AppConfig(**data.get("app", {})),
            detector=DetectorConfig(**data.get("detector", {})),
            mosaic=MosaicConfig(**data.get("mosaic", {})),
            tracker=TrackerConfig(**data.get("tracker", {})),
            pipeline=PipelineConfig(**data.get("pipeline", {})),
            recording=RecordingConfig(**data.get("recording", {})),
            storage=StorageConfig(**data.get("storage", {})),
        )


def get_settings() -> Settings:
    config_path = Path(__file__).parent.parent.parent / "config.yaml"
    if config_path.exists():
        return Settings.from_yaml(config_path)
    return Settings()


settings = get_settings()
