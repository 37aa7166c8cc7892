"""Artifact store: opaque key -> bytes storage for transformed images."""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class ArtifactStore(Protocol):
    """Protocol for the key/value store holding transformed images."""

    def has(self, key: str) -> bool:
        """Return True if an artifact is stored under ``key``."""
        ...

    def read(self, key: str) -> bytes:
        """Return the artifact stored under ``key``.

        Raises:
            KeyError: If nothing is stored under ``key``.
        """
        ...

    def write(self, key: str, content: bytes) -> None:
        """Store ``content`` under ``key``, replacing any previous artifact."""
        ...

    def delete(self, key: str) -> None:
        """Remove the artifact under ``key``; missing keys are ignored."""
        ...


# ---------------------------------------------------------------------------
# Local filesystem implementation
# ---------------------------------------------------------------------------


class LocalArtifactStore:
    """Stores artifacts as files in a single directory."""

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def has(self, key: str) -> bool:
        return self._path(key).is_file()

    def read(self, key: str) -> bytes:
        try:
            return self._path(key).read_bytes()
        except FileNotFoundError:
            raise KeyError(key) from None

    def write(self, key: str, content: bytes) -> None:
        target = self._path(key)
        # Write to a sibling temp file first so readers never see a partial artifact.
        fd, tmp_name = tempfile.mkstemp(dir=self._root, prefix=".tmp-")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(content)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug("Stored %s (%s bytes)", key, len(content))

    def delete(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def _path(self, key: str) -> Path:
        if not key or "/" in key or "\\" in key or key in {".", ".."}:
            raise ValueError(f"Invalid artifact key: {key!r}")
        return self._root / key
