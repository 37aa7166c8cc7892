"""Face-aware region operations on the staged working file.

Detection is delegated to an external ``facedetect`` binary that prints one
``x y width height`` line per face. Crop and blur both rewrite the working
file in place, before the main conversion pipeline runs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from reshapex.pipeline.options import is_set

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

    from reshapex.config import Settings
    from reshapex.pipeline.options import OptionSet, OptionValue
    from reshapex.pipeline.runner import ProcessRunner

logger = logging.getLogger(__name__)

FACE_OPTIONS: tuple[str, ...] = ("face-crop", "face-crop-position", "face-blur")


@dataclass(frozen=True)
class FaceRegion:
    """Bounding box of one detected face, in pixels."""

    x: int
    y: int
    width: int
    height: int

    @property
    def geometry(self) -> str:
        """ImageMagick ``WxH+X+Y`` geometry for this region."""
        return f"{self.width}x{self.height}+{self.x}+{self.y}"

    @classmethod
    def parse(cls, line: str) -> FaceRegion | None:
        """Parse a detector output line; returns None for anything malformed."""
        parts = line.split()
        if len(parts) != 4:
            return None
        try:
            x, y, width, height = (int(part) for part in parts)
        except ValueError:
            return None
        return cls(x=x, y=y, width=width, height=height)


def parse_regions(lines: Iterable[str]) -> list[FaceRegion]:
    regions: list[FaceRegion] = []
    for line in lines:
        if not line.strip():
            continue
        region = FaceRegion.parse(line)
        if region is None:
            logger.warning("Skipping malformed face detector line: %r", line)
            continue
        regions.append(region)
    return regions


def _position(value: OptionValue) -> int:
    if value is None:
        return 0
    try:
        return int(value)
    except ValueError:
        return 0


@dataclass(frozen=True)
class FaceRequest:
    """Face operations requested for one transformation."""

    crop: bool = False
    crop_position: int = 0
    blur: bool = False

    @property
    def requested(self) -> bool:
        return self.crop or self.blur

    @classmethod
    def claim_from(cls, options: OptionSet) -> tuple[FaceRequest, OptionSet]:
        (crop, position, blur), options = options.claim_many(*FACE_OPTIONS)
        return cls(crop=is_set(crop), crop_position=_position(position), blur=is_set(blur)), options


class FaceRegionProcessor:
    """Runs face detection and applies crop or blur to the detected regions."""

    def __init__(self, settings: Settings, runner: ProcessRunner) -> None:
        self._facedetect = settings.facedetect_path
        self._convert = settings.convert_path
        self._mogrify = settings.mogrify_path
        self._runner = runner

    def detect(self, image: Path) -> list[FaceRegion]:
        return parse_regions(self._runner.run([self._facedetect, str(image)]))

    def apply(self, request: FaceRequest, image: Path) -> None:
        """Apply the requested operations; blur runs before crop."""
        if request.blur:
            self.blur_faces(image)
        if request.crop:
            self.crop_to_face(image, request.crop_position)

    def crop_to_face(self, image: Path, position: int = 0) -> FaceRegion | None:
        """Crop ``image`` in place to the face at ``position``.

        Returns the region used, or None when there is no face at that
        position, in which case the image is left untouched.
        """
        regions = self.detect(image)
        if not 0 <= position < len(regions):
            logger.info("No face at position %s (%s detected), skipping crop", position, len(regions))
            return None

        region = regions[position]
        self._runner.run([self._convert, str(image), "-crop", region.geometry, str(image)])
        return region

    def blur_faces(self, image: Path) -> list[FaceRegion]:
        """Pixelate every detected face in place, one region after another."""
        regions = self.detect(image)
        for region in regions:
            self._runner.run(
                [
                    self._mogrify,
                    "-gravity",
                    "NorthWest",
                    "-region",
                    region.geometry,
                    "-scale",
                    "10%",
                    "-scale",
                    "1000%",
                    str(image),
                ]
            )
        logger.debug("Blurred %s face(s) in %s", len(regions), image)
        return regions
