"""Runtime configuration and per-endpoint request models.

Settings come from the environment once at startup. Each endpoint's query
string is turned into one of the request models below at the HTTP boundary,
so handlers only ever see validated, typed values.
"""

import logging
import os
import shutil
import sys
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field

AudioQuality = Literal["low", "medium", "high"]

VIDEO_QUALITY_LABELS = ("144p", "240p", "360p", "480p", "720p", "1080p")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logging.getLogger(__name__).warning("Invalid %s=%r; using %d", name, raw, default)
        return default


class Settings(BaseModel):
    host: str = "0.0.0.0"
    port: int = 3000
    environment: str = "production"
    log_level: str = "INFO"

    cache_dir: Path = Path("cache")
    # 6 hours retention, swept hourly
    cache_retention_seconds: int = Field(default=6 * 60 * 60, gt=0)
    cache_sweep_interval_seconds: int = Field(default=60 * 60, gt=0)

    # 100 requests per client per 15 minutes
    rate_limit_requests: int = Field(default=100, gt=0)
    rate_limit_window_seconds: int = Field(default=15 * 60, gt=0)

    collaborator_timeout_seconds: float = Field(default=60.0, gt=0)
    ffmpeg_path: str | None = None
    cookie_file: str | None = None

    @property
    def debug(self) -> bool:
        return self.environment.lower() == "development"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            host=os.getenv("HOST", "0.0.0.0"),
            port=_env_int("PORT", 3000),
            environment=os.getenv("APP_ENV", "production"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            cache_dir=Path(os.getenv("CACHE_DIR", "cache")),
            cache_retention_seconds=_env_int("CACHE_RETENTION_SECONDS", 6 * 60 * 60),
            cache_sweep_interval_seconds=_env_int("CACHE_SWEEP_INTERVAL_SECONDS", 60 * 60),
            rate_limit_requests=_env_int("RATE_LIMIT_REQUESTS", 100),
            rate_limit_window_seconds=_env_int("RATE_LIMIT_WINDOW_SECONDS", 15 * 60),
            collaborator_timeout_seconds=float(_env_int("COLLABORATOR_TIMEOUT_SECONDS", 60)),
            ffmpeg_path=os.getenv("FFMPEG_PATH") or shutil.which("ffmpeg"),
            cookie_file=os.getenv("COOKIE_FILE") or None,
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


# Request models


class InfoRequest(BaseModel):
    video_id: str


class AudioRequest(BaseModel):
    video_id: str
    quality: AudioQuality = "high"
    # Kilobits per second, digits only
    bitrate: str = Field(default="192", pattern=r"^[1-9][0-9]{0,3}$")


class VideoRequest(BaseModel):
    video_id: str
    # Unknown labels are allowed and mean "highest available"
    quality: str = "360p"

    @property
    def is_known_quality(self) -> bool:
        return self.quality in VIDEO_QUALITY_LABELS


class SearchRequest(BaseModel):
    query: str = Field(min_length=2)
    limit: int = Field(default=10, ge=1, le=50)
