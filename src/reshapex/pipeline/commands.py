"""Translate transformation options into an ImageMagick command pipeline.

Geometry rules follow ImageMagick semantics:

* ``WxH`` resizes to fit inside the box; ``W`` or ``xH`` constrain one side.
* ``>`` only shrinks, ``^`` fills the box (used with ``-extent`` to crop) and
  ``!`` ignores the aspect ratio. These flags are only valid when both width
  and height are given, except ``>`` which also applies to a single side.
* ``-gravity``/``-extent`` are only emitted when both dimensions are present.
"""

from __future__ import annotations

import logging
import os
import shlex
from dataclasses import dataclass
from typing import TYPE_CHECKING

from reshapex.pipeline.options import OutputFormat, is_set, resolve_output_format

if TYPE_CHECKING:
    from pathlib import Path

    from reshapex.config import Settings
    from reshapex.pipeline.options import OptionSet, OptionValue

logger = logging.getLogger(__name__)

Stage = tuple[str, ...]

# Handled by the codec stage, or not an engine flag at all.
CODEC_OPTIONS: frozenset[str] = frozenset({"quality", "mozjpeg", "refresh"})

DEFAULT_GRAVITY = "Center"


@dataclass(frozen=True)
class CommandPipeline:
    """Ordered command stages; stdout of each stage feeds stdin of the next."""

    stages: tuple[Stage, ...]

    def render(self) -> str:
        """Return a shell-equivalent rendering for logs and diagnostics."""
        return " | ".join(shlex.join(stage) for stage in self.stages)

    def __str__(self) -> str:
        return self.render()


@dataclass(frozen=True)
class Geometry:
    """Size token plus optional gravity/extent clauses."""

    size: str
    gravity: Stage = ()
    extent: Stage = ()

    @classmethod
    def compute(
        cls,
        width: OptionValue,
        height: OptionValue,
        *,
        crop: OptionValue = None,
        preserve_aspect_ratio: OptionValue = None,
        preserve_natural_size: OptionValue = None,
        gravity: OptionValue = None,
    ) -> Geometry:
        has_width = is_set(width)
        has_height = is_set(height)

        size = ""
        if has_width:
            size += str(width)
        if has_height:
            size += f"x{height}"

        if not (has_width and has_height):
            if size and is_set(preserve_natural_size):
                size += ">"
            return cls(size=size)

        box = size
        extent: Stage = ("-extent", box) if is_set(crop) else ("-extent", box, "+repage")
        gravity_value = gravity if is_set(gravity) else DEFAULT_GRAVITY

        constraints = ""
        if is_set(preserve_natural_size):
            constraints += ">"
        if is_set(crop):
            constraints += "^"
        # Aspect ratio is kept unless the caller turned preservation off.
        if not is_set(preserve_aspect_ratio):
            constraints += "!"

        return cls(size=box + constraints, gravity=("-gravity", gravity_value), extent=extent)

    @classmethod
    def claim_from(cls, options: OptionSet) -> tuple[Geometry, OptionSet]:
        """Claim the geometry options and compute the geometry they describe."""
        values, options = options.claim_many(
            "width",
            "height",
            "crop",
            "preserve-aspect-ratio",
            "preserve-natural-size",
            "gravity",
        )
        width, height, crop, preserve_aspect_ratio, preserve_natural_size, gravity = values
        geometry = cls.compute(
            width,
            height,
            crop=crop,
            preserve_aspect_ratio=preserve_aspect_ratio,
            preserve_natural_size=preserve_natural_size,
            gravity=gravity,
        )
        return geometry, options

    def arguments(self) -> list[str]:
        return [self.size, *self.gravity, *self.extent]


class CommandBuilder:
    """Builds the main conversion pipeline. Never executes anything."""

    def __init__(self, settings: Settings) -> None:
        self._convert = settings.convert_path
        self._mozjpeg_path = settings.mozjpeg_path

    @property
    def mozjpeg_available(self) -> bool:
        path = self._mozjpeg_path
        return path is not None and os.path.isfile(path) and os.access(path, os.X_OK)

    def build(self, options: OptionSet, source: Path, destination: Path) -> CommandPipeline:
        """Build the pipeline converting ``source`` into ``destination``.

        Args:
            options: Option set with face options already claimed.
            source: Staged working file.
            destination: Final output file; its extension selects the format.

        Returns:
            The command pipeline, one or two stages long.
        """
        (strip, thread, resize, output), options = options.claim_many("strip", "thread", "resize", "output")
        geometry, options = Geometry.claim_from(options)

        # thumbnail is the cheaper downscale-only path
        operator = "resize" if is_set(resize) else "thumbnail"

        command = [self._convert, str(source)]
        if geometry.size:
            command += [f"-{operator}", *geometry.arguments()]
        command += ["-colorspace", "sRGB"]

        if is_set(thread):
            command += ["-limit", "thread", thread]

        if is_set(strip):
            command.append("-strip")

        for name, value in options.remaining(exclude=CODEC_OPTIONS).items():
            command += [f"-{name}", value]

        pipeline = self._encode(options, command, destination, resolve_output_format(output))
        logger.debug("Built command: %s", pipeline)
        return pipeline

    def _encode(
        self,
        options: OptionSet,
        command: list[str],
        destination: Path,
        output: OutputFormat,
    ) -> CommandPipeline:
        (quality, mozjpeg), _ = options.claim_many("quality", "mozjpeg")
        quality_args = ["-quality", quality] if is_set(quality) else []

        if output is OutputFormat.JPG and is_set(mozjpeg) and self.mozjpeg_available:
            command.append("TGA:-")
            encoder = [str(self._mozjpeg_path), *quality_args, "-outfile", str(destination), "-targa"]
            return CommandPipeline((tuple(command), tuple(encoder)))

        command += [*quality_args, str(destination)]
        return CommandPipeline((tuple(command),))
