from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Dict, List, Optional
import os


class ThumbnailSize(BaseModel):
    width: int
    height: int


class VideoPreset(BaseModel):
    resolution: str
    video_bitrate: str
    audio_bitrate: str


def default_thumbnail_sizes() -> Dict[str, ThumbnailSize]:
    return {
        "small": ThumbnailSize(width=150, height=150),
        "medium": ThumbnailSize(width=300, height=300),
        "large": ThumbnailSize(width=600, height=600),
    }


def default_video_presets() -> Dict[str, VideoPreset]:
    return {
        "480p": VideoPreset(resolution="854x480", video_bitrate="1000k", audio_bitrate="128k"),
        "720p": VideoPreset(resolution="1280x720", video_bitrate="2500k", audio_bitrate="192k"),
        "1080p": VideoPreset(resolution="1920x1080", video_bitrate="5000k", audio_bitrate="192k"),
    }


class Settings(BaseSettings):
    # Application settings
    app_name: str = "Media Pipeline"
    environment: str = os.getenv("PYTHON_ENV", "development")

    # Google Cloud settings
    google_cloud_project: str = os.getenv("GOOGLE_CLOUD_PROJECT", "PROJECT_ID")

    # Storage settings
    storage_bucket: str = os.getenv("STORAGE_BUCKET", "recipe-media-storage")
    cdn_domain: str = os.getenv("CDN_DOMAIN", "cdn.example.com")

    # Database settings
    datastore_namespace: str = os.getenv("DATASTORE_NAMESPACE", "media-pipeline")

    # Upload limits
    max_image_bytes: int = 5 * 1024 * 1024  # 5MB
    max_video_bytes: int = 1024 * 1024 * 1024  # 1GB

    # Image pipeline settings
    max_image_dimension: int = 2000
    image_quality: int = 80
    thumbnail_sizes: Dict[str, ThumbnailSize] = default_thumbnail_sizes()

    # Video pipeline settings
    temp_dir: str = os.getenv("TEMP_DIR", "/tmp/media-pipeline")
    ffmpeg_path: Optional[str] = os.getenv("FFMPEG_PATH")
    video_presets: Dict[str, VideoPreset] = default_video_presets()
    poster_width: int = 1280
    poster_height: int = 720
    poster_timestamp_fraction: float = 0.5
    video_processing_timeout: float = 3600  # 1 hour
    recovery_interval: float = 300  # 5 minutes

    # Security settings
    allowed_origins: List[str] = os.getenv("ALLOWED_ORIGINS", "*").split(",")

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)


settings = Settings()
