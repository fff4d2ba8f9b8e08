"""Tests for status, log and artifact queries."""

import threading
import time
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from ubuntu_autoinstaller.artifacts.store import ArtifactStore
from ubuntu_autoinstaller.builds.registry import BuildNotFoundError, BuildRegistry
from ubuntu_autoinstaller.builds.status import (
    ArtifactUnavailableError,
    BuildNotReadyError,
    StatusReporter,
)
from ubuntu_autoinstaller.db import Base
from ubuntu_autoinstaller.types import BuildStatus, LogLevel, StepName
from ubuntu_autoinstaller.userdata.schema import BuildRequest

STEPS = [StepName.PREPARE, StepName.FINALIZE]


@pytest.fixture
def request_config() -> BuildRequest:
    return BuildRequest(
        source_type="local",
        source_iso="/srv/iso/ubuntu-22.04.4-live-server-amd64.iso",
        user_data="autoinstall:\n  version: 1\n",
    )


@pytest.fixture
def store(tmp_path: Path):
    engine = create_engine(f"sqlite:///{tmp_path}/test.db")
    Base.metadata.create_all(engine)
    yield ArtifactStore(
        artifacts_dir=tmp_path / "artifacts",
        uploads_dir=tmp_path / "uploads",
        session_factory=sessionmaker(bind=engine, expire_on_commit=False),
    )
    engine.dispose()


@pytest.fixture
def registry() -> BuildRegistry:
    return BuildRegistry()


@pytest.fixture
def reporter(registry: BuildRegistry, store: ArtifactStore) -> StatusReporter:
    return StatusReporter(registry, store)


def complete_job(registry, store, job_id: str, tmp_path: Path) -> str:
    iso = tmp_path / "out.iso"
    iso.write_bytes(b"iso")
    handle = store.store(iso, job_id)

    def finish(job):
        job = job.mark_running()
        for name in STEPS:
            job = job.start_step(name).complete_step(name)
        return job.mark_completed(handle)

    registry.update(job_id, finish)
    return handle


class TestGetStatus:
    """Tests for get_status and list_builds."""

    def test_status_view(self, registry, reporter, request_config) -> None:
        job = registry.create(request_config, STEPS)
        view = reporter.get_status(job.id)

        assert view.build_id == job.id
        assert view.status == BuildStatus.QUEUED
        assert view.progress == 0
        assert [s.name for s in view.steps] == ["prepare", "finalize"]
        assert view.error is None
        assert view.artifact_handle is None

    def test_status_view_of_failed_job(self, registry, reporter, request_config) -> None:
        job = registry.create(request_config, STEPS)
        registry.update(
            job.id,
            lambda j: j.mark_running()
            .start_step(StepName.PREPARE)
            .fail_step(StepName.PREPARE, "missing xorriso"),
        )
        view = reporter.get_status(job.id)

        assert view.status == BuildStatus.FAILED
        assert view.error is not None
        assert view.error.kind == "step_failure"
        assert view.error.step == "prepare"
        assert view.error.message == "missing xorriso"

    def test_unknown_build(self, reporter) -> None:
        with pytest.raises(BuildNotFoundError):
            reporter.get_status("build_missing")

    def test_status_view_serializes(self, registry, reporter, request_config) -> None:
        job = registry.create(request_config, STEPS)
        data = reporter.get_status(job.id).model_dump(mode="json")
        assert data["status"] == "queued"
        assert data["steps"][0]["state"] == "pending"

    def test_list_builds_filters(self, registry, reporter, request_config) -> None:
        queued = registry.create(request_config, STEPS)
        running = registry.create(request_config, STEPS)
        registry.update(running.id, lambda j: j.mark_running())

        assert {v.build_id for v in reporter.list_builds()} == {queued.id, running.id}
        assert [v.build_id for v in reporter.list_builds(BuildStatus.RUNNING)] == [
            running.id
        ]


class TestLogs:
    """Tests for log queries."""

    def test_logs_from_offset(self, registry, reporter, request_config) -> None:
        job = registry.create(request_config, STEPS)
        for message in ("one", "two", "three"):
            registry.update(job.id, lambda j, m=message: j.append_log(m))

        view = reporter.get_logs(job.id, since=1)

        assert len(view.logs) == 2
        assert view.logs[0].endswith("[INFO] two")
        assert view.next_offset == 3

    def test_log_reads_are_idempotent(self, registry, reporter, request_config) -> None:
        job = registry.create(request_config, STEPS)
        registry.update(job.id, lambda j: j.append_log("warn", LogLevel.WARNING))

        assert reporter.get_logs(job.id) == reporter.get_logs(job.id)

    def test_offset_past_end(self, registry, reporter, request_config) -> None:
        job = registry.create(request_config, STEPS)
        registry.update(job.id, lambda j: j.append_log("only"))

        view = reporter.get_logs(job.id, since=10)
        assert view.logs == []
        assert view.next_offset == 1

    def test_negative_offset_rejected(self, registry, reporter, request_config) -> None:
        job = registry.create(request_config, STEPS)
        with pytest.raises(ValueError):
            reporter.get_logs(job.id, since=-1)

    def test_iter_logs_follows_until_terminal(
        self, registry, reporter, request_config
    ) -> None:
        job = registry.create(request_config, STEPS)
        registry.update(job.id, lambda j: j.append_log("first"))

        def finish() -> None:
            time.sleep(0.1)
            registry.update(job.id, lambda j: j.append_log("second"))
            registry.update(job.id, lambda j: j.mark_cancelled())

        t = threading.Thread(target=finish)
        t.start()
        lines = list(reporter.iter_logs(job.id, poll_interval=0.02))
        t.join()

        assert [line.message for line in lines] == ["first", "second"]


class TestGetArtifact:
    """Tests for get_artifact."""

    def test_artifact_of_completed_build(
        self, registry, store, reporter, request_config, tmp_path
    ) -> None:
        job = registry.create(request_config, STEPS)
        handle = complete_job(registry, store, job.id, tmp_path)

        record = reporter.get_artifact(job.id)
        assert record.handle == handle
        assert Path(record.path).read_bytes() == b"iso"

    def test_not_ready_while_running(self, registry, reporter, request_config) -> None:
        job = registry.create(request_config, STEPS)
        registry.update(job.id, lambda j: j.mark_running())

        with pytest.raises(BuildNotReadyError) as exc_info:
            reporter.get_artifact(job.id)
        assert exc_info.value.code == "build_not_ready"
        assert exc_info.value.status == BuildStatus.RUNNING

    def test_unavailable_when_cancelled(self, registry, reporter, request_config) -> None:
        job = registry.create(request_config, STEPS)
        registry.update(job.id, lambda j: j.mark_cancelled())

        with pytest.raises(ArtifactUnavailableError) as exc_info:
            reporter.get_artifact(job.id)
        assert exc_info.value.code == "artifact_not_found"

    def test_swept_artifact_reports_not_found(
        self, registry, store, reporter, request_config, tmp_path
    ) -> None:
        job = registry.create(request_config, STEPS)
        complete_job(registry, store, job.id, tmp_path)

        # Sweep without the registry so the job survives its artifact
        store.retention_sweep(timedelta(seconds=0))

        with pytest.raises(BuildNotFoundError):
            reporter.get_artifact(job.id)
