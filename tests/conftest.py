"""Shared fixtures: settings rooted in a temporary directory and a source image."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from _fakes import CONVERT, FACEDETECT, IDENTIFY, MOGRIFY

from reshapex.config import Settings

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path


@pytest.fixture()
def make_settings(tmp_path: Path) -> Callable[..., Settings]:
    """Build settings rooted in ``tmp_path`` with optional overrides."""

    def _make(**overrides: object) -> Settings:
        values: dict[str, object] = {
            "tmp_dir": tmp_path / "tmp",
            "cache_dir": tmp_path / "cache",
            "convert_path": CONVERT,
            "mogrify_path": MOGRIFY,
            "identify_path": IDENTIFY,
            "facedetect_path": FACEDETECT,
            "mozjpeg_path": None,
        }
        values.update(overrides)
        return Settings(**values)  # type: ignore[arg-type]

    return _make


@pytest.fixture()
def source_file(tmp_path: Path) -> Path:
    path = tmp_path / "source.jpg"
    path.write_bytes(b"source-bytes")
    return path
