"""Transformation options: URL parsing and claim-once bookkeeping.

Pipeline stages claim the options they handle. Whatever is left unclaimed is
forwarded to the processing engine as generic ``-name value`` flags.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import TYPE_CHECKING, TypeGuard

from reshapex.pipeline.errors import InvalidOptions

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)

OptionValue = str | None

SHORT_KEYS: dict[str, str] = {
    "moz": "mozjpeg",
    "q": "quality",
    "o": "output",
    "unsh": "unsharp",
    "fc": "face-crop",
    "fcp": "face-crop-position",
    "fb": "face-blur",
    "w": "width",
    "h": "height",
    "c": "crop",
    "bg": "background",
    "st": "strip",
    "rz": "resize",
    "g": "gravity",
    "f": "filter",
    "r": "rotate",
    "sc": "scale",
    "sf": "sampling-factor",
    "rf": "refresh",
    "ett": "extent",
    "par": "preserve-aspect-ratio",
    "pns": "preserve-natural-size",
    "t": "thread",
}

KNOWN_OPTIONS: frozenset[str] = frozenset(SHORT_KEYS.values())

_EMPTY_VALUES = frozenset({"", "0", "false"})


class OutputFormat(StrEnum):
    JPG = "jpg"
    PNG = "png"
    WEBP = "webp"
    GIF = "gif"

    @property
    def content_type(self) -> str:
        return _CONTENT_TYPES[self]


_CONTENT_TYPES: dict[OutputFormat, str] = {
    OutputFormat.JPG: "image/jpeg",
    OutputFormat.PNG: "image/png",
    OutputFormat.WEBP: "image/webp",
    OutputFormat.GIF: "image/gif",
}

_FORMAT_ALIASES = {"jpeg": OutputFormat.JPG}


def normalize_value(value: object) -> OptionValue:
    """Coerce a configured or parsed value to the string form used on the command line."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "1" if value else "0"
    return str(value)


def is_set(value: OptionValue) -> TypeGuard[str]:
    """Return True when an option value counts as present."""
    return value is not None and value.strip().lower() not in _EMPTY_VALUES


def parse_option_string(raw: str) -> dict[str, str]:
    """Parse ``w_200,h_100,c_1`` into long option names, preserving order.

    Keys may be given in short or long form. Anything else is dropped: only
    names from ``SHORT_KEYS`` ever reach the command line.
    """
    parsed: dict[str, str] = {}
    if not raw or raw == "-":
        return parsed
    for pair in raw.split(","):
        short, sep, value = pair.strip().partition("_")
        if not sep or not short:
            if pair.strip():
                logger.debug("Ignoring malformed option pair %r", pair)
            continue
        name = SHORT_KEYS.get(short, short)
        if name not in KNOWN_OPTIONS:
            logger.debug("Ignoring unknown option %r", short)
            continue
        parsed[name] = value
    return parsed


@dataclass(frozen=True, eq=False)
class OptionSet(Mapping[str, OptionValue]):
    """Immutable option mapping plus the set of keys already claimed.

    ``claim`` never mutates: it returns the value together with a successor
    set in which the key is marked as consumed. Indexing and iteration always
    see the complete mapping, which cache key derivation reads.
    """

    _values: Mapping[str, OptionValue] = field(default_factory=dict)
    claimed: frozenset[str] = frozenset()

    def __post_init__(self) -> None:
        object.__setattr__(self, "_values", MappingProxyType(dict(self._values)))

    @classmethod
    def build(cls, defaults: Mapping[str, object], overrides: Mapping[str, object] | None = None) -> OptionSet:
        """Layer request options over defaults; defaults keep their declaration order."""
        merged: dict[str, OptionValue] = {key: normalize_value(value) for key, value in defaults.items()}
        for key, value in (overrides or {}).items():
            merged[key] = normalize_value(value)
        return cls(merged)

    @classmethod
    def from_request(cls, raw: str, defaults: Mapping[str, object]) -> OptionSet:
        return cls.build(defaults, parse_option_string(raw))

    # -- Mapping ------------------------------------------------------------

    def __getitem__(self, key: str) -> OptionValue:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    # -- Claiming -----------------------------------------------------------

    def peek(self, key: str) -> OptionValue:
        """Return a value without claiming it; claimed keys read as None."""
        if key in self.claimed:
            return None
        return self._values.get(key)

    def claim(self, key: str) -> tuple[OptionValue, OptionSet]:
        """Consume ``key``, returning its value (None if absent or already claimed)."""
        value = self.peek(key)
        return value, OptionSet(self._values, self.claimed | {key})

    def claim_many(self, *keys: str) -> tuple[list[OptionValue], OptionSet]:
        values = [self.peek(key) for key in keys]
        return values, OptionSet(self._values, self.claimed | set(keys))

    def remaining(self, exclude: Iterable[str] = ()) -> dict[str, str]:
        """Return unclaimed, non-empty options in insertion order."""
        skip = self.claimed | set(exclude)
        return {
            key: value
            for key, value in self._values.items()
            if key not in skip and is_set(value)
        }


def resolve_output_format(value: OptionValue) -> OutputFormat:
    """Map the ``output`` option to a format; unset means JPEG."""
    if not is_set(value):
        return OutputFormat.JPG
    name = value.strip().lower()
    if name in _FORMAT_ALIASES:
        return _FORMAT_ALIASES[name]
    try:
        return OutputFormat(name)
    except ValueError:
        raise InvalidOptions(f"Unsupported output format: {value}") from None
