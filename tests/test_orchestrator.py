"""Tests for the request-level transformation sequence."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING
from unittest.mock import patch

import pytest
from _fakes import FakeEngine

from reshapex.config import DEFAULT_OPTIONS
from reshapex.pipeline.errors import (
    ForbiddenSource,
    InvalidOptions,
    ProcessFailure,
    ProcessingFailure,
    SourceFetchFailure,
)
from reshapex.pipeline.orchestrator import TransformationOrchestrator, TransformRequest
from reshapex.pipeline.source import SourceFetcher
from reshapex.storage.artifact_store import LocalArtifactStore

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from reshapex.config import Settings

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_orchestrator(
    settings: Settings, engine: FakeEngine
) -> tuple[TransformationOrchestrator, LocalArtifactStore]:
    store = LocalArtifactStore(settings.cache_dir)
    return TransformationOrchestrator(settings, store, runner=engine), store


def _request(source: Path | str, options: str = "w_100,h_50") -> TransformRequest:
    return TransformRequest.parse(str(source), options, DEFAULT_OPTIONS)


def _tmp_files(settings: Settings) -> list[str]:
    return sorted(p.name for p in settings.tmp_dir.iterdir())


# ---------------------------------------------------------------------------
# Caching
# ---------------------------------------------------------------------------


class TestCaching:
    def test_miss_generates_and_commits(self, make_settings: Callable[..., Settings], source_file: Path) -> None:
        settings = make_settings()
        engine = FakeEngine()
        orchestrator, store = _make_orchestrator(settings, engine)

        result = orchestrator.process(_request(source_file))

        assert result.from_cache is False
        assert result.content == b"IMG:source-bytes"
        assert result.content_type == "image/jpeg"
        assert result.key.endswith(".jpg")
        assert store.read(result.key) == result.content

    def test_repeat_request_is_served_from_cache(
        self, make_settings: Callable[..., Settings], source_file: Path
    ) -> None:
        engine = FakeEngine()
        orchestrator, _ = _make_orchestrator(make_settings(), engine)

        first = orchestrator.process(_request(source_file))
        source_file.write_bytes(b"changed-upstream")
        second = orchestrator.process(_request(source_file))

        assert second.from_cache is True
        assert second.content == first.content
        assert len(engine.main_runs) == 1

    def test_refresh_recomputes_and_overwrites(
        self, make_settings: Callable[..., Settings], source_file: Path
    ) -> None:
        engine = FakeEngine()
        orchestrator, store = _make_orchestrator(make_settings(), engine)

        first = orchestrator.process(_request(source_file, "w_100,h_50"))
        source_file.write_bytes(b"changed-upstream")
        refreshed = orchestrator.process(_request(source_file, "w_100,h_50,rf_1"))

        assert refreshed.key == first.key
        assert refreshed.from_cache is False
        assert refreshed.content == b"IMG:changed-upstream"
        assert store.read(first.key) == b"IMG:changed-upstream"
        assert len(engine.main_runs) == 2

    def test_output_format_drives_key_and_content_type(
        self, make_settings: Callable[..., Settings], source_file: Path
    ) -> None:
        engine = FakeEngine()
        orchestrator, _ = _make_orchestrator(make_settings(), engine)

        result = orchestrator.process(_request(source_file, "w_100,o_png"))

        assert result.key.endswith(".png")
        assert result.content_type == "image/png"
        assert engine.main_runs[0].stages[0][-1].endswith(".png")

    def test_concurrent_identical_requests_generate_once(
        self, make_settings: Callable[..., Settings], source_file: Path
    ) -> None:
        engine = FakeEngine()
        orchestrator, _ = _make_orchestrator(make_settings(max_concurrent=4), engine)

        with ThreadPoolExecutor(max_workers=4) as executor:
            results = list(executor.map(lambda _: orchestrator.process(_request(source_file)), range(8)))

        assert len(engine.main_runs) == 1
        assert {r.content for r in results} == {b"IMG:source-bytes"}
        assert sum(not r.from_cache for r in results) == 1
        assert orchestrator.in_flight_keys == 0

    def test_key_counted_as_in_flight_while_generating(
        self, make_settings: Callable[..., Settings], source_file: Path
    ) -> None:
        engine = FakeEngine()
        orchestrator, _ = _make_orchestrator(make_settings(), engine)
        run = engine.run
        seen: list[int] = []

        def observing_run(command: object) -> list[str]:
            seen.append(orchestrator.in_flight_keys)
            return run(command)  # type: ignore[arg-type]

        with patch.object(engine, "run", side_effect=observing_run):
            orchestrator.process(_request(source_file))

        assert seen == [1]
        assert orchestrator.in_flight_keys == 0


# ---------------------------------------------------------------------------
# Pipeline stages
# ---------------------------------------------------------------------------


class TestPipelineStages:
    def test_face_operations_run_before_main_pipeline(
        self, make_settings: Callable[..., Settings], source_file: Path
    ) -> None:
        engine = FakeEngine(faces=["10 20 30 40", "50 60 70 80"])
        orchestrator, _ = _make_orchestrator(make_settings(), engine)

        orchestrator.process(_request(source_file, "w_100,fb_1,fc_1,fcp_1"))

        binaries = [c.stages[0][0] for c in engine.commands]
        assert binaries == [
            "facedetect",
            "/usr/bin/mogrify",
            "/usr/bin/mogrify",
            "facedetect",
            "/usr/bin/convert",
            "/usr/bin/convert",
        ]
        crop = engine.commands[4].stages[0]
        assert crop[2:4] == ("-crop", "70x80+50+60")

    def test_face_options_are_not_passed_through(
        self, make_settings: Callable[..., Settings], source_file: Path
    ) -> None:
        engine = FakeEngine()
        orchestrator, _ = _make_orchestrator(make_settings(), engine)

        orchestrator.process(_request(source_file, "w_100,fc_1,fb_1"))

        argv = engine.main_runs[0].stages[0]
        assert not any(arg.startswith("-face") for arg in argv)

    def test_face_steps_skipped_when_not_requested(
        self, make_settings: Callable[..., Settings], source_file: Path
    ) -> None:
        engine = FakeEngine(faces=["10 20 30 40"])
        orchestrator, _ = _make_orchestrator(make_settings(), engine)

        orchestrator.process(_request(source_file))

        assert [c.stages[0][0] for c in engine.commands] == ["/usr/bin/convert"]

    def test_main_pipeline_reads_staged_copy(self, make_settings: Callable[..., Settings], source_file: Path) -> None:
        settings = make_settings()
        engine = FakeEngine()
        orchestrator, _ = _make_orchestrator(settings, engine)

        orchestrator.process(_request(source_file))

        staged = engine.touched[0]
        assert staged.parent == settings.tmp_dir
        assert staged != source_file

    def test_identity_reported_when_enabled(self, make_settings: Callable[..., Settings], source_file: Path) -> None:
        engine = FakeEngine()
        orchestrator, _ = _make_orchestrator(make_settings(identify_output=True), engine)

        result = orchestrator.process(_request(source_file))

        assert result.identity is not None
        assert "JPEG 100x50" in result.identity

    def test_identity_absent_by_default(self, make_settings: Callable[..., Settings], source_file: Path) -> None:
        orchestrator, _ = _make_orchestrator(make_settings(), FakeEngine())
        assert orchestrator.process(_request(source_file)).identity is None


# ---------------------------------------------------------------------------
# Failures and cleanup
# ---------------------------------------------------------------------------


class TestFailures:
    def test_forbidden_source_rejected_before_fetch(self, make_settings: Callable[..., Settings]) -> None:
        settings = make_settings(restricted_domains=True, whitelist_domains=["images.example.com"])
        engine = FakeEngine()
        fetcher = SourceFetcher(settings)
        orchestrator = TransformationOrchestrator(
            settings, LocalArtifactStore(settings.cache_dir), fetcher=fetcher, runner=engine
        )

        with patch.object(fetcher, "fetch") as fetch, pytest.raises(ForbiddenSource) as excinfo:
            orchestrator.process(_request("http://evil.example.org/cat.jpg"))

        assert excinfo.value.host == "evil.example.org"
        fetch.assert_not_called()
        assert engine.commands == []

    def test_invalid_output_format(self, make_settings: Callable[..., Settings], source_file: Path) -> None:
        engine = FakeEngine()
        orchestrator, _ = _make_orchestrator(make_settings(), engine)
        with pytest.raises(InvalidOptions):
            orchestrator.process(_request(source_file, "o_bmp"))
        assert engine.commands == []

    def test_processing_failure_commits_nothing(
        self, make_settings: Callable[..., Settings], source_file: Path
    ) -> None:
        settings = make_settings()
        engine = FakeEngine(fail_main=True)
        orchestrator, store = _make_orchestrator(settings, engine)

        with pytest.raises(ProcessingFailure) as excinfo:
            orchestrator.process(_request(source_file))

        failure = excinfo.value
        assert failure.command == engine.commands[-1].render()
        assert "-colorspace" in failure.command
        assert isinstance(failure.__cause__, ProcessFailure)
        assert list(store.root.iterdir()) == []
        assert _tmp_files(settings) == []

    def test_refresh_failure_leaves_no_stale_artifact(
        self, make_settings: Callable[..., Settings], source_file: Path
    ) -> None:
        settings = make_settings()
        orchestrator, store = _make_orchestrator(settings, FakeEngine())
        first = orchestrator.process(_request(source_file))

        failing, _ = _make_orchestrator(settings, FakeEngine(fail_main=True))
        with pytest.raises(ProcessingFailure):
            failing.process(_request(source_file, "w_100,h_50,rf_1"))

        assert not store.has(first.key)

    def test_face_detector_failure_is_process_failure(
        self, make_settings: Callable[..., Settings], source_file: Path
    ) -> None:
        settings = make_settings()
        engine = FakeEngine(fail_detect=True)
        orchestrator, store = _make_orchestrator(settings, engine)

        with pytest.raises(ProcessFailure) as excinfo:
            orchestrator.process(_request(source_file, "fc_1"))

        assert not isinstance(excinfo.value, ProcessingFailure)
        assert engine.main_runs == []
        assert _tmp_files(settings) == []
        assert list(store.root.iterdir()) == []

    def test_fetch_failure(self, make_settings: Callable[..., Settings], tmp_path: Path) -> None:
        settings = make_settings()
        engine = FakeEngine()
        orchestrator, store = _make_orchestrator(settings, engine)

        with pytest.raises(SourceFetchFailure):
            orchestrator.process(_request(tmp_path / "missing.jpg"))

        assert engine.commands == []
        assert _tmp_files(settings) == []
        assert list(store.root.iterdir()) == []

    def test_temporary_files_removed_after_success(
        self, make_settings: Callable[..., Settings], source_file: Path
    ) -> None:
        settings = make_settings()
        engine = FakeEngine()
        orchestrator, _ = _make_orchestrator(settings, engine)

        orchestrator.process(_request(source_file))

        assert engine.touched
        assert all(not path.exists() for path in engine.touched)
        assert _tmp_files(settings) == []

    def test_requests_use_distinct_working_files(self, source_file: Path) -> None:
        first = _request(source_file)
        second = _request(source_file)
        assert first.request_id != second.request_id
