"""Step execution primitives.

This module handles:
- The StepExecutor protocol and the context passed to each step
- The per-build working tree layout
- Running external commands with streamed output, timeouts and
  cancellation (SIGTERM, then SIGKILL after a grace period)
"""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import threading
import time
from collections import deque
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from ubuntu_autoinstaller.types import LogLevel

if TYPE_CHECKING:
    from ubuntu_autoinstaller.userdata.schema import BuildRequest

logger = logging.getLogger(__name__)

# Output lines quoted in a failed command's error message
ERROR_TAIL_LINES = 20

# How often the watcher checks for cancellation and timeouts (seconds)
WATCH_INTERVAL = 0.1


class StepFailedError(Exception):
    """Raised by an executor when its step cannot complete."""

    def __init__(self, message: str, code: str = "step_failure") -> None:
        super().__init__(message)
        self.code = code


class StepCancelledError(Exception):
    """Raised by an executor that stopped because the build was cancelled."""

    def __init__(self, message: str = "cancelled", code: str = "cancelled") -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class WorkTree:
    """Directory layout of a single build."""

    root: Path

    @property
    def download_dir(self) -> Path:
        return self.root / "download"

    @property
    def build_dir(self) -> Path:
        return self.root / "build"

    @property
    def boot_dir(self) -> Path:
        # El Torito images extracted from [BOOT], referenced as ../BOOT by xorriso
        return self.root / "BOOT"

    @property
    def packages_dir(self) -> Path:
        return self.build_dir / "mnt" / "packages"

    @property
    def script_dir(self) -> Path:
        return self.build_dir / "mnt" / "script"

    @property
    def out_dir(self) -> Path:
        return self.root / "out"

    def directories(self) -> list[Path]:
        return [
            self.download_dir,
            self.build_dir,
            self.packages_dir,
            self.script_dir,
            self.out_dir,
        ]


@dataclass
class StepContext:
    """Everything a step executor may use.

    Attributes:
        build_id: Id of the build being executed.
        config: Frozen request snapshot.
        outputs: Outputs of the steps that ran before this one.
        work_dir: Root of the build's working tree.
        emit: Sink for user-facing log lines.
        cancel_event: Set when the build should stop.
        command_timeout: Timeout for each external command (seconds).
        kill_grace: Delay between SIGTERM and SIGKILL (seconds).
    """

    build_id: str
    config: BuildRequest
    outputs: Mapping[str, Any]
    work_dir: Path
    emit: Callable[[str, LogLevel], None]
    cancel_event: threading.Event = field(default_factory=threading.Event)
    command_timeout: float | None = None
    kill_grace: float = 10.0

    @property
    def tree(self) -> WorkTree:
        return WorkTree(self.work_dir)

    def info(self, message: str) -> None:
        self.emit(message, LogLevel.INFO)

    def warning(self, message: str) -> None:
        self.emit(message, LogLevel.WARNING)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def raise_if_cancelled(self) -> None:
        """Raise StepCancelledError if cancellation was requested."""
        if self.cancel_event.is_set():
            raise StepCancelledError()


@dataclass
class StepResult:
    """Outputs a step makes available to later steps."""

    outputs: dict[str, Any] = field(default_factory=dict)


class StepExecutor(Protocol):
    """A single pipeline step."""

    def run(self, ctx: StepContext) -> StepResult:
        """Execute the step.

        Raises:
            StepFailedError: If the step fails.
            StepCancelledError: If the step stopped due to cancellation.
        """
        ...


@dataclass
class ProcessResult:
    """Outcome of a successful external command."""

    command: str
    exit_code: int
    output: list[str]


def _signal_group(proc: subprocess.Popen[str], sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except (ProcessLookupError, PermissionError):
        pass


def terminate_process(proc: subprocess.Popen[str], grace: float) -> None:
    """Stop a process group with SIGTERM, then SIGKILL after grace seconds."""
    if proc.poll() is not None:
        return
    logger.info("Sending SIGTERM to process %d", proc.pid)
    _signal_group(proc, signal.SIGTERM)
    try:
        proc.wait(timeout=grace)
    except subprocess.TimeoutExpired:
        logger.warning("Process %d ignored SIGTERM, sending SIGKILL", proc.pid)
        _signal_group(proc, signal.SIGKILL)
        proc.wait()


def run_process(
    cmd: Sequence[str],
    ctx: StepContext,
    cwd: Path | None = None,
    timeout: float | None = None,
    echo: bool = True,
    capture: bool = False,
    stdout_path: Path | None = None,
) -> ProcessResult:
    """Run an external command on behalf of a step.

    Combined stdout/stderr is streamed line by line to ``ctx.emit``. The
    command runs in its own process group so cancellation reaches its
    children too.

    Args:
        cmd: Command and arguments.
        ctx: Step context (log sink, cancellation signal, timeouts).
        cwd: Working directory.
        timeout: Overrides ``ctx.command_timeout``.
        echo: Whether to emit output lines to the build log.
        capture: Whether to return all output lines.
        stdout_path: Write stdout to this file; only stderr is streamed.

    Returns:
        ProcessResult of the finished command.

    Raises:
        StepFailedError: If the command cannot start, exits non-zero or
            times out. The message ends with the last output lines.
        StepCancelledError: If the build was cancelled while running.
    """
    ctx.raise_if_cancelled()
    cmd_str = shlex.join(cmd)
    effective_timeout = timeout if timeout is not None else ctx.command_timeout
    logger.debug("Executing for %s: %s", ctx.build_id, cmd_str)
    ctx.emit(f"$ {cmd_str}", LogLevel.DEBUG)

    stdout_file = stdout_path.open("w") if stdout_path is not None else None
    try:
        proc = subprocess.Popen(
            list(cmd),
            cwd=cwd,
            stdout=stdout_file if stdout_file is not None else subprocess.PIPE,
            stderr=subprocess.PIPE if stdout_file is not None else subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            text=True,
            errors="replace",
            bufsize=1,
            start_new_session=True,
        )
    except OSError as e:
        if stdout_file is not None:
            stdout_file.close()
        raise StepFailedError(f"Failed to execute {cmd[0]}: {e}") from e
    stream = proc.stderr if stdout_file is not None else proc.stdout

    stop_reason: list[str] = []
    finished = threading.Event()

    def watch() -> None:
        deadline = (
            time.monotonic() + effective_timeout if effective_timeout else None
        )
        while not finished.is_set():
            if ctx.cancel_event.wait(WATCH_INTERVAL):
                stop_reason.append("cancelled")
                break
            if deadline is not None and time.monotonic() >= deadline:
                stop_reason.append("timeout")
                break
        else:
            return
        terminate_process(proc, ctx.kill_grace)

    watcher = threading.Thread(
        target=watch, name=f"watch-{ctx.build_id}", daemon=True
    )
    watcher.start()

    tail: deque[str] = deque(maxlen=ERROR_TAIL_LINES)
    output: list[str] = []
    try:
        if stream is None:
            raise StepFailedError(f"No output pipe for {cmd[0]}")
        for raw_line in stream:
            line = raw_line.rstrip("\n")
            tail.append(line)
            if capture:
                output.append(line)
            if echo and line:
                ctx.emit(line, LogLevel.INFO)
        exit_code = proc.wait()
    finally:
        finished.set()
        watcher.join()
        if proc.poll() is None:
            terminate_process(proc, ctx.kill_grace)
        if stdout_file is not None:
            stdout_file.close()

    if stop_reason and stop_reason[0] == "cancelled":
        raise StepCancelledError(f"{cmd[0]} interrupted")
    if stop_reason and stop_reason[0] == "timeout":
        raise StepFailedError(
            f"{cmd[0]} timed out after {effective_timeout:g}s\n" + "\n".join(tail)
        )
    if exit_code != 0:
        message = f"{cmd[0]} exited with code {exit_code}"
        if tail:
            message += "\n" + "\n".join(tail)
        raise StepFailedError(message)

    return ProcessResult(command=cmd_str, exit_code=exit_code, output=output)


__all__ = [
    "ERROR_TAIL_LINES",
    "ProcessResult",
    "StepCancelledError",
    "StepContext",
    "StepExecutor",
    "StepFailedError",
    "StepResult",
    "WorkTree",
    "run_process",
    "terminate_process",
]
