"""Build orchestration.

This module handles:
- Launching builds on background worker threads
- Driving each job through the step plan
- Cancellation (user request, deadline, shutdown)
- Publishing the artifact on success
- A watchdog for workers that died without finishing their job
"""

from __future__ import annotations

import logging
import shutil
import threading
from collections.abc import Sequence
from datetime import timedelta
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Any

from ubuntu_autoinstaller.artifacts.store import ArtifactStoreError
from ubuntu_autoinstaller.builds.models import BuildJob, utcnow
from ubuntu_autoinstaller.builds.plan import StepSpec, default_plan, step_names
from ubuntu_autoinstaller.builds.registry import BuildNotFoundError
from ubuntu_autoinstaller.builds.runner import (
    StepCancelledError,
    StepContext,
    StepFailedError,
)
from ubuntu_autoinstaller.builds.steps import OUTPUT_ISO, OUTPUT_SHA256
from ubuntu_autoinstaller.types import CancelReason, ErrorKind, LogLevel

if TYPE_CHECKING:
    from ubuntu_autoinstaller.artifacts.store import ArtifactStore
    from ubuntu_autoinstaller.builds.registry import BuildRegistry
    from ubuntu_autoinstaller.config import Settings
    from ubuntu_autoinstaller.userdata.schema import BuildRequest

logger = logging.getLogger(__name__)

# How often a queued worker re-checks for cancellation (seconds)
QUEUE_POLL_INTERVAL = 0.1

WORKER_DIED_MESSAGE = "Build worker stopped unexpectedly"


class BuildOrchestrator:
    """Runs build jobs through the step plan.

    Args:
        registry: Registry holding job snapshots.
        store: Store receiving finished ISOs.
        plan: Ordered step specs.
        work_root: Parent directory of per-build working trees.
        max_concurrent_builds: Builds allowed to run at the same time.
        build_timeout: Wall-clock limit per build in seconds (None: no limit).
        command_timeout: Limit per external command in seconds.
        kill_grace: Delay between SIGTERM and SIGKILL when cancelling.
        keep_work_dirs: Keep working trees after builds finish.
    """

    def __init__(
        self,
        registry: BuildRegistry,
        store: ArtifactStore,
        plan: Sequence[StepSpec],
        work_root: Path,
        max_concurrent_builds: int = 2,
        build_timeout: float | None = None,
        command_timeout: float | None = None,
        kill_grace: float = 10.0,
        keep_work_dirs: bool = False,
    ) -> None:
        self.registry = registry
        self.store = store
        self.plan = list(plan)
        self.work_root = work_root
        self.max_concurrent_builds = max_concurrent_builds
        self.build_timeout = build_timeout
        self.command_timeout = command_timeout
        self.kill_grace = kill_grace
        self.keep_work_dirs = keep_work_dirs
        self._slots = threading.BoundedSemaphore(max_concurrent_builds)
        self._lock = threading.Lock()
        self._threads: dict[str, threading.Thread] = {}
        self._cancel_events: dict[str, threading.Event] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        registry: BuildRegistry,
        store: ArtifactStore,
        plan: Sequence[StepSpec] | None = None,
    ) -> BuildOrchestrator:
        """Create an orchestrator configured from settings."""
        return cls(
            registry=registry,
            store=store,
            plan=plan if plan is not None else default_plan(settings, store),
            work_root=settings.work_dir,
            max_concurrent_builds=settings.max_concurrent_builds,
            build_timeout=settings.build_timeout,
            command_timeout=settings.command_timeout,
            kill_grace=settings.kill_grace_seconds,
            keep_work_dirs=settings.keep_work_dirs,
        )

    def start(self, config: BuildRequest) -> BuildJob:
        """Register a job and launch its worker thread.

        Args:
            config: Validated build request.

        Returns:
            The queued job snapshot.
        """
        with self._lock:
            job = self.registry.create(config, step_names(self.plan))
            event = threading.Event()
            thread = threading.Thread(
                target=self._run_job,
                args=(job.id, event),
                name=f"build-{job.id}",
                daemon=True,
            )
            self._cancel_events[job.id] = event
            self._threads[job.id] = thread
            thread.start()
        logger.info("Started build %s", job.id)
        return job

    def cancel(self, build_id: str, reason: CancelReason = CancelReason.USER) -> BuildJob:
        """Request cancellation of a build.

        Best-effort: a job that finishes first keeps its outcome.

        Returns:
            The current snapshot.

        Raises:
            BuildNotFoundError: If the id is unknown.
        """
        job = self.registry.get(build_id)
        if job.is_terminal:
            return job

        def request(current: BuildJob) -> BuildJob:
            if current.is_terminal or current.cancel_requested:
                return current
            return current.request_cancel(reason).append_log(
                f"Cancellation requested ({reason.value})", LogLevel.WARNING
            )

        job = self.registry.update(build_id, request)
        with self._lock:
            event = self._cancel_events.get(build_id)
        if event is not None:
            event.set()
            logger.info("Cancellation of build %s requested (%s)", build_id, reason.value)
        else:
            job = self._finish_cancelled(build_id)
        return job

    def wait(self, build_id: str, timeout: float | None = None) -> BuildJob:
        """Block until the worker of a build exits.

        Returns:
            The latest snapshot.
        """
        with self._lock:
            thread = self._threads.get(build_id)
        if thread is not None:
            thread.join(timeout)
        return self.registry.get(build_id)

    def active_builds(self) -> list[str]:
        """Return ids of builds whose worker is still alive."""
        with self._lock:
            return [bid for bid, t in self._threads.items() if t.is_alive()]

    def reap(self) -> list[str]:
        """Fail jobs whose worker died and enforce deadlines.

        Returns:
            Ids of jobs forced to failed.
        """
        now = utcnow()
        reaped: list[str] = []
        # Snapshot jobs before threads: start() registers both under the lock
        jobs = self.registry.list(limit=None)
        with self._lock:
            threads = dict(self._threads)

        for job in jobs:
            if job.is_terminal:
                continue
            thread = threads.get(job.id)
            if thread is None or not thread.is_alive():
                if self._force_failed(job.id, WORKER_DIED_MESSAGE):
                    logger.error("Worker of build %s is gone; marked failed", job.id)
                    reaped.append(job.id)
            elif job.deadline is not None and now >= job.deadline:
                if not job.cancel_requested:
                    self._on_deadline(job.id)

        with self._lock:
            for build_id, thread in list(self._threads.items()):
                if not thread.is_alive():
                    del self._threads[build_id]
                    self._cancel_events.pop(build_id, None)
        return reaped

    def shutdown(self, timeout: float = 30.0) -> None:
        """Cancel running builds and wait for their workers."""
        for build_id in self.active_builds():
            try:
                self.cancel(build_id, CancelReason.SHUTDOWN)
            except BuildNotFoundError:
                continue
        deadline = utcnow() + timedelta(seconds=timeout)
        with self._lock:
            threads = list(self._threads.values())
        for thread in threads:
            remaining = (deadline - utcnow()).total_seconds()
            thread.join(max(remaining, 0))

    def _run_job(self, build_id: str, cancel_event: threading.Event) -> None:
        timer: threading.Timer | None = None
        try:
            while not self._slots.acquire(timeout=QUEUE_POLL_INTERVAL):
                if cancel_event.is_set():
                    self._finish_cancelled(build_id)
                    return
            try:
                if cancel_event.is_set():
                    self._finish_cancelled(build_id)
                    return
                timer = self._start_deadline_timer(build_id)
                self._execute(build_id, cancel_event)
            finally:
                self._slots.release()
        except Exception as e:
            logger.exception("Build %s crashed", build_id)
            self._force_failed(build_id, f"Internal error: {e}")
        finally:
            if timer is not None:
                timer.cancel()
            if not self.keep_work_dirs:
                shutil.rmtree(self.work_root / build_id, ignore_errors=True)

    def _start_deadline_timer(self, build_id: str) -> threading.Timer | None:
        deadline = None
        if self.build_timeout:
            deadline = utcnow() + timedelta(seconds=self.build_timeout)
        self.registry.update(
            build_id,
            lambda job: job.mark_running(deadline).append_log("Build started"),
        )
        if not self.build_timeout:
            return None
        timer = threading.Timer(self.build_timeout, self._on_deadline, args=(build_id,))
        timer.daemon = True
        timer.start()
        return timer

    def _execute(self, build_id: str, cancel_event: threading.Event) -> None:
        config = self.registry.get(build_id).config
        work_dir = self.work_root / build_id
        outputs: dict[str, Any] = {}

        def emit(message: str, level: LogLevel = LogLevel.INFO) -> None:
            self.registry.update(build_id, lambda job: job.append_log(message, level))

        for spec in self.plan:
            name = spec.name
            if cancel_event.is_set():
                self._finish_cancelled(build_id)
                return

            if not spec.enabled_if(config):
                self.registry.update(
                    build_id,
                    lambda job: job.skip_step(name).append_log(
                        f"Skipping {name.value} (disabled)"
                    ),
                )
                continue

            self.registry.update(
                build_id,
                lambda job: job.start_step(name).append_log(f"Starting {name.value}"),
            )
            ctx = StepContext(
                build_id=build_id,
                config=config,
                outputs=MappingProxyType(dict(outputs)),
                work_dir=work_dir,
                emit=emit,
                cancel_event=cancel_event,
                command_timeout=self.command_timeout,
                kill_grace=self.kill_grace,
            )
            try:
                result = spec.executor.run(ctx)
            except StepCancelledError:
                self._finish_cancelled(build_id)
                return
            except StepFailedError as e:
                if cancel_event.is_set():
                    self._finish_cancelled(build_id)
                    return
                self._fail_step(build_id, spec, str(e), ErrorKind.STEP_FAILURE)
                return
            except Exception as e:
                logger.exception("Step %s of build %s raised", name.value, build_id)
                self._fail_step(
                    build_id,
                    spec,
                    f"{type(e).__name__}: {e}",
                    ErrorKind.INFRASTRUCTURE,
                )
                return

            outputs.update(result.outputs)
            self.registry.update(
                build_id,
                lambda job: job.complete_step(name).append_log(f"Completed {name.value}"),
            )

        if cancel_event.is_set():
            self._finish_cancelled(build_id)
            return
        self._publish(build_id, outputs)

    def _publish(self, build_id: str, outputs: dict[str, Any]) -> None:
        output = outputs.get(OUTPUT_ISO)
        try:
            if output is None:
                raise ArtifactStoreError("Build produced no output image")
            handle = self.store.store(
                Path(output), build_id, expected_sha256=outputs.get(OUTPUT_SHA256)
            )
        except ArtifactStoreError as e:
            logger.error("Storing artifact of build %s failed: %s", build_id, e)
            self._force_failed(build_id, f"Failed to store artifact: {e}")
            return

        self.registry.update(build_id, lambda job: job.mark_completed(handle))
        logger.info("Build %s completed (artifact %s)", build_id, handle)

    def _fail_step(
        self, build_id: str, spec: StepSpec, message: str, kind: ErrorKind
    ) -> None:
        summary = message.splitlines()[0] if message else "failed"
        self.registry.update(
            build_id,
            lambda job: job.append_log(
                f"Step {spec.name.value} failed: {summary}", LogLevel.ERROR
            ).fail_step(spec.name, message, kind),
        )
        logger.warning("Build %s failed at %s: %s", build_id, spec.name.value, summary)

    def _force_failed(self, build_id: str, message: str) -> bool:
        changed = False

        def fail(job: BuildJob) -> BuildJob:
            nonlocal changed
            if job.is_terminal:
                return job
            changed = True
            return job.append_log(message, LogLevel.ERROR).mark_failed(
                message, kind=ErrorKind.INFRASTRUCTURE
            )

        try:
            self.registry.update(build_id, fail)
        except BuildNotFoundError:
            logger.warning("Build %s vanished before it could be failed", build_id)
        return changed

    def _finish_cancelled(self, build_id: str) -> BuildJob:
        def cancel(job: BuildJob) -> BuildJob:
            if job.is_terminal:
                return job
            reason = job.cancel_reason or CancelReason.USER
            return job.append_log(
                f"Build cancelled ({reason.value})", LogLevel.WARNING
            ).mark_cancelled()

        job = self.registry.update(build_id, cancel)
        logger.info("Build %s cancelled", build_id)
        return job

    def _on_deadline(self, build_id: str) -> None:
        logger.warning("Build %s exceeded its deadline", build_id)
        try:
            self.cancel(build_id, CancelReason.TIMEOUT)
        except BuildNotFoundError:
            pass


__all__ = ["WORKER_DIED_MESSAGE", "BuildOrchestrator"]
