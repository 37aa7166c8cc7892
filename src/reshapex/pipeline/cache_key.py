"""Deterministic artifact keys derived from a source reference and its options."""

from __future__ import annotations

import hashlib
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping

    from reshapex.pipeline.options import OptionValue, OutputFormat

# Options that change how a request is served but not what it produces.
NON_KEY_OPTIONS: frozenset[str] = frozenset({"refresh"})


def canonical_options(options: Mapping[str, OptionValue]) -> str:
    """Serialize options sorted by name so insertion order does not matter."""
    pairs = (
        f"{name}={'' if value is None else value}"
        for name, value in sorted(options.items())
        if name not in NON_KEY_OPTIONS
    )
    return "&".join(pairs)


def derive_cache_key(source: str, options: Mapping[str, OptionValue], output: OutputFormat) -> str:
    """Return the artifact filename for ``source`` transformed with ``options``.

    ``options`` must be the full option set as received, before any stage has
    claimed from it.
    """
    digest = hashlib.md5(f"{source}|{canonical_options(options)}".encode(), usedforsecurity=False).hexdigest()
    return f"{digest}.{output.value}"
