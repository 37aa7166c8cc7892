"""Request-level orchestration: validate, look up, stage, transform, commit.

Every request walks the same sequence::

    validate -> cache lookup -> stage -> face ops -> build -> execute -> commit

and always ends by removing its temporary files. The first failure aborts the
request and nothing is written to the store.
"""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from reshapex.pipeline.cache_key import derive_cache_key
from reshapex.pipeline.commands import CommandBuilder
from reshapex.pipeline.errors import ProcessFailure, ProcessingFailure
from reshapex.pipeline.faces import FaceRegionProcessor, FaceRequest
from reshapex.pipeline.options import OptionSet, is_set, resolve_output_format
from reshapex.pipeline.runner import ProcessRunner
from reshapex.pipeline.source import SourceFetcher

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

    from reshapex.config import Settings
    from reshapex.pipeline.options import OutputFormat
    from reshapex.storage.artifact_store import ArtifactStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransformRequest:
    """One inbound transformation: a source reference and its full option set."""

    source: str
    options: OptionSet
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @classmethod
    def parse(cls, source: str, raw_options: str, defaults: Mapping[str, object]) -> TransformRequest:
        return cls(source=source, options=OptionSet.from_request(raw_options, defaults))

    @property
    def refresh(self) -> bool:
        return is_set(self.options.get("refresh"))

    @property
    def output(self) -> OutputFormat:
        return resolve_output_format(self.options.get("output"))


@dataclass(frozen=True)
class TransformResult:
    key: str
    content: bytes
    content_type: str
    from_cache: bool
    identity: str | None = None


@dataclass(frozen=True)
class WorkingFiles:
    """Request-scoped temporary files, named after the request id."""

    source: Path
    output: Path

    @classmethod
    def allocate(cls, tmp_dir: Path, request_id: str, output: OutputFormat) -> WorkingFiles:
        return cls(
            source=tmp_dir / f"{request_id}-source",
            output=tmp_dir / f"{request_id}.{output.value}",
        )

    def cleanup(self) -> None:
        for path in (self.source, self.output):
            path.unlink(missing_ok=True)


@dataclass
class _KeyLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


class TransformationOrchestrator:
    """Produces transformed images and keeps the artifact store filled."""

    def __init__(
        self,
        settings: Settings,
        store: ArtifactStore,
        *,
        fetcher: SourceFetcher | None = None,
        runner: ProcessRunner | None = None,
        builder: CommandBuilder | None = None,
        faces: FaceRegionProcessor | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._runner = runner or ProcessRunner()
        self._fetcher = fetcher or SourceFetcher(settings)
        self._builder = builder or CommandBuilder(settings)
        self._faces = faces or FaceRegionProcessor(settings, self._runner)

        self._tmp_dir = Path(settings.tmp_dir)
        self._tmp_dir.mkdir(parents=True, exist_ok=True)

        self._locks_guard = threading.Lock()
        self._key_locks: dict[str, _KeyLock] = {}

    @property
    def builder(self) -> CommandBuilder:
        return self._builder

    @property
    def in_flight_keys(self) -> int:
        """Number of cache keys currently being looked up or generated."""
        with self._locks_guard:
            return len(self._key_locks)

    # -- Public API ---------------------------------------------------------

    def process(self, request: TransformRequest) -> TransformResult:
        """Return the transformed image for ``request``, generating it on a cache miss.

        Raises:
            ForbiddenSource: Domain restriction is on and the host is not allowed.
            InvalidOptions: The output format is not supported.
            SourceFetchFailure: The source could not be retrieved.
            ProcessFailure: Face detection or a face operation failed.
            ProcessingFailure: The main conversion pipeline failed.
        """
        self._fetcher.check_allowed(request.source)

        output = request.output
        key = derive_cache_key(request.source, request.options, output)

        with self._locked(key):
            if not request.refresh and self._store.has(key):
                logger.info("Cache hit for %s (%s)", request.source, key)
                return TransformResult(
                    key=key,
                    content=self._store.read(key),
                    content_type=output.content_type,
                    from_cache=True,
                )

            if request.refresh and self._store.has(key):
                logger.info("Refresh requested, dropping %s", key)
                self._store.delete(key)

            logger.info("Cache miss for %s (%s), generating", request.source, key)
            content, identity = self._generate(request, output)

            if self._store.has(key):
                self._store.delete(key)
            self._store.write(key, content)
            logger.info("Committed %s (%s bytes)", key, len(content))

        return TransformResult(
            key=key,
            content=content,
            content_type=output.content_type,
            from_cache=False,
            identity=identity,
        )

    # -- Internal -----------------------------------------------------------

    def _generate(self, request: TransformRequest, output: OutputFormat) -> tuple[bytes, str | None]:
        files = WorkingFiles.allocate(self._tmp_dir, request.request_id, output)
        try:
            files.source.write_bytes(self._fetcher.fetch(request.source))

            face_request, options = FaceRequest.claim_from(request.options)
            if face_request.requested:
                self._faces.apply(face_request, files.source)

            pipeline = self._builder.build(options, files.source, files.output)
            try:
                self._runner.run(pipeline)
            except ProcessFailure as exc:
                logger.debug("Main pipeline failed for %s", request.source)
                raise ProcessingFailure.from_process_failure(exc) from exc

            if not files.output.is_file():
                raise ProcessingFailure(0, "no output file produced", pipeline.render())

            identity = self._identify(files.output) if self._settings.identify_output else None
            return files.output.read_bytes(), identity
        finally:
            files.cleanup()

    def _identify(self, image: Path) -> str:
        lines = self._runner.run([self._settings.identify_path, str(image)])
        return lines[0] if lines else ""

    @contextmanager
    def _locked(self, key: str) -> Iterator[None]:
        """Serialize work on ``key`` so concurrent misses generate it only once."""
        with self._locks_guard:
            entry = self._key_locks.setdefault(key, _KeyLock())
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._key_locks[key]
