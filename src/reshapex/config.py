"""Environment-based configuration for reshapex."""

from __future__ import annotations

import tempfile
from pathlib import Path
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_OPTIONS: dict[str, Any] = {
    "mozjpeg": 1,
    "quality": 90,
    "output": "jpg",
    "unsharp": None,
    "face-crop": 0,
    "face-crop-position": 0,
    "face-blur": 0,
    "width": None,
    "height": None,
    "crop": None,
    "background": None,
    "strip": 1,
    "resize": None,
    "gravity": "Center",
    "filter": "Lanczos",
    "rotate": None,
    "scale": None,
    "sampling-factor": "1x1",
    "refresh": 0,
    "extent": None,
    "preserve-aspect-ratio": 1,
    "preserve-natural-size": 1,
    "thread": 1,
}


class Settings(BaseSettings):
    """Application settings loaded from RESHAPEX_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="RESHAPEX_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8080
    log_level: str = "INFO"

    # Source restrictions
    restricted_domains: bool = False
    whitelist_domains: list[str] = Field(default_factory=list)
    fetch_timeout: float = Field(default=15.0, gt=0)

    # Working directories
    tmp_dir: Path = Path(tempfile.gettempdir()) / "reshapex"
    cache_dir: Path = Path("var/cache")

    # External binaries
    convert_path: str = "/usr/bin/convert"
    mogrify_path: str = "/usr/bin/mogrify"
    identify_path: str = "/usr/bin/identify"
    facedetect_path: str = "facedetect"
    mozjpeg_path: str | None = "/opt/mozjpeg/bin/cjpeg"

    # Report `identify` output of freshly generated images
    identify_output: bool = False

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    slot_timeout: float = Field(default=5.0, gt=0)

    # Options applied when a request does not set them
    default_options: dict[str, Any] = Field(default_factory=lambda: dict(DEFAULT_OPTIONS))


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
