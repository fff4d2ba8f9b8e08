"""Tests for the build orchestrator.

Steps are replaced by fake executors so the pipeline can be driven
deterministically without external tools.
"""

import hashlib
import threading
import time
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from ubuntu_autoinstaller.artifacts.store import ArtifactStore
from ubuntu_autoinstaller.builds.models import BUILD_COMPLETED_MARKER, INTERRUPTED
from ubuntu_autoinstaller.builds.orchestrator import (
    WORKER_DIED_MESSAGE,
    BuildOrchestrator,
)
from ubuntu_autoinstaller.builds.plan import StepSpec
from ubuntu_autoinstaller.builds.registry import BuildNotFoundError, BuildRegistry
from ubuntu_autoinstaller.builds.runner import (
    StepCancelledError,
    StepContext,
    StepFailedError,
    StepResult,
)
from ubuntu_autoinstaller.builds.steps import OUTPUT_ISO, OUTPUT_SHA256
from ubuntu_autoinstaller.db import Base
from ubuntu_autoinstaller.types import (
    BuildStatus,
    CancelReason,
    ErrorKind,
    StepName,
    StepState,
)
from ubuntu_autoinstaller.userdata.schema import BuildRequest

ISO_CONTENT = b"fake iso image"


class FakeStep:
    """Step that optionally runs a callback and returns fixed outputs."""

    def __init__(self, action=None, outputs=None) -> None:
        self.action = action
        self.outputs = outputs or {}
        self.calls = 0

    def run(self, ctx: StepContext) -> StepResult:
        self.calls += 1
        if self.action is not None:
            self.action(ctx)
        return StepResult(outputs=dict(self.outputs))


class ProduceIsoStep:
    """Writes an ISO into the work tree like the repackage step would."""

    def __init__(self, content: bytes = ISO_CONTENT, sha256: str | None = None) -> None:
        self.content = content
        self.sha256 = sha256

    def run(self, ctx: StepContext) -> StepResult:
        ctx.work_dir.mkdir(parents=True, exist_ok=True)
        output = ctx.work_dir / "autoinstall.iso"
        output.write_bytes(self.content)
        ctx.info("wrote image")
        return StepResult(
            outputs={
                OUTPUT_ISO: output,
                OUTPUT_SHA256: self.sha256 or hashlib.sha256(self.content).hexdigest(),
            }
        )


class BlockingStep:
    """Blocks until the build is cancelled."""

    def __init__(self, fail_on_cancel: bool = False) -> None:
        self.started = threading.Event()
        self.fail_on_cancel = fail_on_cancel

    def run(self, ctx: StepContext) -> StepResult:
        self.started.set()
        if ctx.cancel_event.wait(10):
            if self.fail_on_cancel:
                raise StepFailedError("xorriso exited with code -15")
            raise StepCancelledError()
        return StepResult()


def make_plan(**overrides) -> list[StepSpec]:
    """Build a plan of fake steps; FINALIZE produces the ISO."""
    plan = []
    for name in StepName:
        executor = overrides.get(name.name)
        if executor is None:
            executor = ProduceIsoStep() if name == StepName.FINALIZE else FakeStep()
        if isinstance(executor, StepSpec):
            plan.append(executor)
        else:
            plan.append(StepSpec(name=name, executor=executor))
    return plan


@pytest.fixture
def request_config() -> BuildRequest:
    return BuildRequest(
        source_type="download",
        code_name="jammy",
        autoinstall={"version": 1, "identity": {"hostname": "test"}},
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
def make_orchestrator(tmp_path: Path, store: ArtifactStore):
    created: list[BuildOrchestrator] = []

    def factory(plan=None, **kwargs) -> BuildOrchestrator:
        orchestrator = BuildOrchestrator(
            registry=BuildRegistry(),
            store=store,
            plan=plan if plan is not None else make_plan(),
            work_root=tmp_path / "work",
            kill_grace=1.0,
            **kwargs,
        )
        created.append(orchestrator)
        return orchestrator

    yield factory
    for orchestrator in created:
        orchestrator.shutdown(timeout=5)


class TestSuccessfulBuild:
    """A build whose steps all succeed."""

    def test_build_completes_with_artifact(
        self, make_orchestrator, request_config, store, tmp_path
    ) -> None:
        orchestrator = make_orchestrator()
        job = orchestrator.start(request_config)
        assert job.status == BuildStatus.QUEUED

        final = orchestrator.wait(job.id, timeout=10)

        assert final.status == BuildStatus.COMPLETED
        assert final.progress == 100
        assert final.error is None
        assert all(s.state == StepState.COMPLETED for s in final.steps)
        assert final.logs[-1].message == BUILD_COMPLETED_MARKER

        record = store.resolve(final.artifact_handle)
        assert record.build_id == job.id
        assert Path(record.path).read_bytes() == ISO_CONTENT
        assert record.sha256 == hashlib.sha256(ISO_CONTENT).hexdigest()
        # Working tree is removed after the build
        assert not (tmp_path / "work" / job.id).exists()

    def test_logs_record_step_boundaries(self, make_orchestrator, request_config) -> None:
        orchestrator = make_orchestrator()
        job = orchestrator.start(request_config)
        final = orchestrator.wait(job.id, timeout=10)

        messages = [line.message for line in final.logs]
        assert "Build started" in messages
        assert "Starting prepare" in messages
        assert "Completed finalize" in messages
        assert "wrote image" in messages
        assert [line.offset for line in final.logs] == list(range(len(final.logs)))

    def test_disabled_steps_are_skipped(self, make_orchestrator, request_config) -> None:
        verify = FakeStep()
        plan = make_plan(
            VERIFY=StepSpec(
                name=StepName.VERIFY, executor=verify, enabled_if=lambda c: False
            )
        )
        orchestrator = make_orchestrator(plan)
        job = orchestrator.start(request_config)
        final = orchestrator.wait(job.id, timeout=10)

        assert final.status == BuildStatus.COMPLETED
        assert final.step(StepName.VERIFY).state == StepState.SKIPPED
        assert verify.calls == 0
        assert "Skipping verify (disabled)" in [line.message for line in final.logs]

    def test_outputs_flow_to_later_steps(self, make_orchestrator, request_config) -> None:
        seen = {}

        def record(ctx: StepContext) -> None:
            seen.update(ctx.outputs)

        plan = make_plan(
            PREPARE=FakeStep(outputs={"codename": "jammy"}),
            EXTRACT=FakeStep(action=record),
        )
        orchestrator = make_orchestrator(plan)
        job = orchestrator.start(request_config)
        orchestrator.wait(job.id, timeout=10)

        assert seen == {"codename": "jammy"}

    def test_progress_is_monotonic(self, make_orchestrator, request_config) -> None:
        def pause(ctx: StepContext) -> None:
            time.sleep(0.02)

        slow = {
            name.name: FakeStep(action=pause)
            for name in StepName
            if name != StepName.FINALIZE
        }
        plan = make_plan(**slow)
        orchestrator = make_orchestrator(plan)
        job = orchestrator.start(request_config)

        samples = []
        while True:
            snapshot = orchestrator.registry.get(job.id)
            samples.append(snapshot.progress)
            if snapshot.is_terminal:
                break
            time.sleep(0.002)

        assert samples == sorted(samples)
        assert samples[-1] == 100
        assert all(p <= 99 for p in samples[:-1])

    def test_keep_work_dirs(self, make_orchestrator, request_config, tmp_path) -> None:
        mkdir = FakeStep(action=lambda ctx: ctx.work_dir.mkdir(parents=True))
        plan = make_plan(PREPARE=mkdir)
        orchestrator = make_orchestrator(plan, keep_work_dirs=True)
        job = orchestrator.start(request_config)
        orchestrator.wait(job.id, timeout=10)

        assert (tmp_path / "work" / job.id).is_dir()


class TestFailedBuild:
    """Builds that fail."""

    def test_step_failure(self, make_orchestrator, request_config) -> None:
        def fail(ctx: StepContext) -> None:
            raise StepFailedError("7z exited with code 2\nCannot open file")

        orchestrator = make_orchestrator(make_plan(EXTRACT=FakeStep(action=fail)))
        job = orchestrator.start(request_config)
        final = orchestrator.wait(job.id, timeout=10)

        assert final.status == BuildStatus.FAILED
        assert final.error.kind == ErrorKind.STEP_FAILURE
        assert final.error.step == StepName.EXTRACT
        assert "Cannot open file" in final.error.message
        assert final.step(StepName.EXTRACT).state == StepState.FAILED
        assert final.step(StepName.REPACKAGE).state == StepState.PENDING
        assert final.artifact_handle is None
        assert final.progress < 100
        assert "Step extract failed: 7z exited with code 2" in [
            line.message for line in final.logs
        ]

    def test_unexpected_exception_is_infrastructure(
        self, make_orchestrator, request_config
    ) -> None:
        def crash(ctx: StepContext) -> None:
            raise RuntimeError("disk on fire")

        orchestrator = make_orchestrator(make_plan(PREPARE=FakeStep(action=crash)))
        job = orchestrator.start(request_config)
        final = orchestrator.wait(job.id, timeout=10)

        assert final.status == BuildStatus.FAILED
        assert final.error.kind == ErrorKind.INFRASTRUCTURE
        assert "disk on fire" in final.error.message

    def test_store_failure_is_infrastructure(
        self, make_orchestrator, request_config
    ) -> None:
        plan = make_plan(FINALIZE=ProduceIsoStep(sha256="0" * 64))
        orchestrator = make_orchestrator(plan)
        job = orchestrator.start(request_config)
        final = orchestrator.wait(job.id, timeout=10)

        assert final.status == BuildStatus.FAILED
        assert final.error.kind == ErrorKind.INFRASTRUCTURE
        assert "Checksum mismatch" in final.error.message
        assert final.artifact_handle is None

    def test_missing_output_fails_build(self, make_orchestrator, request_config) -> None:
        orchestrator = make_orchestrator(make_plan(FINALIZE=FakeStep()))
        job = orchestrator.start(request_config)
        final = orchestrator.wait(job.id, timeout=10)

        assert final.status == BuildStatus.FAILED
        assert final.error.kind == ErrorKind.INFRASTRUCTURE


class TestCancellation:
    """Cancellation by user, deadline and shutdown."""

    def test_cancel_running_build(self, make_orchestrator, request_config) -> None:
        blocking = BlockingStep()
        orchestrator = make_orchestrator(make_plan(EXTRACT=blocking))
        job = orchestrator.start(request_config)
        assert blocking.started.wait(5)

        requested = orchestrator.cancel(job.id)
        assert requested.cancel_requested is True

        final = orchestrator.wait(job.id, timeout=10)
        assert final.status == BuildStatus.CANCELLED
        assert final.cancel_reason == CancelReason.USER
        extract = final.step(StepName.EXTRACT)
        assert extract.state == StepState.SKIPPED
        assert extract.error == INTERRUPTED
        assert final.step(StepName.FINALIZE).state == StepState.SKIPPED
        assert final.step(StepName.PREPARE).state == StepState.COMPLETED
        assert final.artifact_handle is None
        assert "Build cancelled (user)" in [line.message for line in final.logs]

    def test_killed_command_counts_as_cancelled(
        self, make_orchestrator, request_config
    ) -> None:
        blocking = BlockingStep(fail_on_cancel=True)
        orchestrator = make_orchestrator(make_plan(REPACKAGE=blocking))
        job = orchestrator.start(request_config)
        assert blocking.started.wait(5)

        orchestrator.cancel(job.id)
        final = orchestrator.wait(job.id, timeout=10)

        assert final.status == BuildStatus.CANCELLED
        assert final.error is None

    def test_cancel_is_idempotent(self, make_orchestrator, request_config) -> None:
        blocking = BlockingStep()
        orchestrator = make_orchestrator(make_plan(EXTRACT=blocking))
        job = orchestrator.start(request_config)
        assert blocking.started.wait(5)

        orchestrator.cancel(job.id)
        orchestrator.cancel(job.id)
        final = orchestrator.wait(job.id, timeout=10)

        messages = [line.message for line in final.logs]
        assert messages.count("Cancellation requested (user)") == 1

    def test_cancel_finished_build_is_noop(self, make_orchestrator, request_config) -> None:
        orchestrator = make_orchestrator()
        job = orchestrator.start(request_config)
        completed = orchestrator.wait(job.id, timeout=10)

        after = orchestrator.cancel(job.id)
        assert after.status == BuildStatus.COMPLETED
        assert after.cancel_requested is False
        assert after.logs == completed.logs

    def test_cancel_unknown_build(self, make_orchestrator) -> None:
        orchestrator = make_orchestrator()
        with pytest.raises(BuildNotFoundError):
            orchestrator.cancel("build_missing")

    def test_deadline_cancels_with_timeout(self, make_orchestrator, request_config) -> None:
        blocking = BlockingStep()
        orchestrator = make_orchestrator(make_plan(EXTRACT=blocking), build_timeout=0.3)
        job = orchestrator.start(request_config)

        final = orchestrator.wait(job.id, timeout=10)

        assert final.status == BuildStatus.CANCELLED
        assert final.cancel_reason == CancelReason.TIMEOUT
        assert final.deadline is not None
        assert "Build cancelled (timeout)" in [line.message for line in final.logs]

    def test_no_deadline_without_build_timeout(
        self, make_orchestrator, request_config
    ) -> None:
        orchestrator = make_orchestrator(build_timeout=None)
        job = orchestrator.start(request_config)

        final = orchestrator.wait(job.id, timeout=10)

        assert final.status == BuildStatus.COMPLETED
        assert final.deadline is None

    def test_shutdown_cancels_running_builds(
        self, make_orchestrator, request_config
    ) -> None:
        blocking = BlockingStep()
        orchestrator = make_orchestrator(make_plan(EXTRACT=blocking))
        job = orchestrator.start(request_config)
        assert blocking.started.wait(5)

        orchestrator.shutdown(timeout=5)

        final = orchestrator.registry.get(job.id)
        assert final.status == BuildStatus.CANCELLED
        assert final.cancel_reason == CancelReason.SHUTDOWN


class TestConcurrency:
    """Concurrency limit and independence of jobs."""

    def test_builds_queue_beyond_limit(self, make_orchestrator, request_config) -> None:
        blocking = BlockingStep()
        orchestrator = make_orchestrator(
            make_plan(EXTRACT=blocking), max_concurrent_builds=1
        )
        first = orchestrator.start(request_config)
        assert blocking.started.wait(5)
        second = orchestrator.start(request_config)
        time.sleep(0.3)

        assert orchestrator.registry.get(second.id).status == BuildStatus.QUEUED

        # A queued build is cancelled without ever running
        orchestrator.cancel(second.id)
        queued_final = orchestrator.wait(second.id, timeout=5)
        assert queued_final.status == BuildStatus.CANCELLED
        assert queued_final.started_at is None
        assert all(s.state == StepState.SKIPPED for s in queued_final.steps)

        orchestrator.cancel(first.id)
        assert orchestrator.wait(first.id, timeout=5).status == BuildStatus.CANCELLED

    def test_parallel_builds_are_independent(
        self, make_orchestrator, request_config, store
    ) -> None:
        orchestrator = make_orchestrator(max_concurrent_builds=3)
        jobs = [orchestrator.start(request_config) for _ in range(3)]

        finals = [orchestrator.wait(job.id, timeout=10) for job in jobs]

        assert all(f.status == BuildStatus.COMPLETED for f in finals)
        handles = {f.artifact_handle for f in finals}
        assert len(handles) == 3
        for final in finals:
            assert store.resolve(final.artifact_handle).build_id == final.id

    def test_failure_does_not_affect_other_builds(
        self, make_orchestrator, request_config
    ) -> None:
        def fail_odd(ctx: StepContext) -> None:
            if ctx.config.destination_iso == "bad.iso":
                raise StepFailedError("bad config")

        orchestrator = make_orchestrator(
            make_plan(APPLY_CONFIGURATION=FakeStep(action=fail_odd)),
            max_concurrent_builds=2,
        )
        bad = orchestrator.start(
            request_config.model_copy(update={"destination_iso": "bad.iso"})
        )
        good = orchestrator.start(request_config)

        assert orchestrator.wait(bad.id, timeout=10).status == BuildStatus.FAILED
        assert orchestrator.wait(good.id, timeout=10).status == BuildStatus.COMPLETED


class TestReap:
    """The watchdog for jobs without a live worker."""

    def test_reap_fails_orphaned_job(self, make_orchestrator, request_config) -> None:
        orchestrator = make_orchestrator()
        orphan = orchestrator.registry.create(request_config)

        reaped = orchestrator.reap()

        assert reaped == [orphan.id]
        final = orchestrator.registry.get(orphan.id)
        assert final.status == BuildStatus.FAILED
        assert final.error.kind == ErrorKind.INFRASTRUCTURE
        assert final.error.message == WORKER_DIED_MESSAGE

    def test_reap_ignores_live_and_finished_jobs(
        self, make_orchestrator, request_config
    ) -> None:
        blocking = BlockingStep()
        orchestrator = make_orchestrator(make_plan(EXTRACT=blocking))
        running = orchestrator.start(request_config)
        assert blocking.started.wait(5)

        assert orchestrator.reap() == []
        assert orchestrator.registry.get(running.id).status == BuildStatus.RUNNING

        orchestrator.cancel(running.id)
        orchestrator.wait(running.id, timeout=5)
        assert orchestrator.reap() == []
        assert orchestrator.active_builds() == []
