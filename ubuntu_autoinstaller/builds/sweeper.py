"""Periodic maintenance of builds and stored files.

A sweep reaps jobs whose worker died, enforces deadlines and applies the
retention period to artifacts, uploads and finished jobs.
"""

from __future__ import annotations

import logging
import threading
from datetime import timedelta
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ubuntu_autoinstaller.artifacts.store import ArtifactStore
    from ubuntu_autoinstaller.builds.orchestrator import BuildOrchestrator

logger = logging.getLogger(__name__)


def run_sweep(
    orchestrator: BuildOrchestrator,
    store: ArtifactStore,
    retention: timedelta,
) -> dict[str, list[str]]:
    """Run one maintenance pass.

    Returns:
        Ids of reaped builds and handles of removed files.
    """
    reaped = orchestrator.reap()
    removed = store.retention_sweep(retention, registry=orchestrator.registry)
    return {"reaped": reaped, "removed": removed}


class Sweeper:
    """Background thread running run_sweep at a fixed interval."""

    def __init__(
        self,
        orchestrator: BuildOrchestrator,
        store: ArtifactStore,
        retention: timedelta,
        interval: float = 60.0,
    ) -> None:
        self.orchestrator = orchestrator
        self.store = store
        self.retention = retention
        self.interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._loop, name="sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                run_sweep(self.orchestrator, self.store, self.retention)
            except Exception:
                # Keep sweeping; a failed pass is retried on the next tick
                logger.exception("Maintenance sweep failed")


__all__ = ["Sweeper", "run_sweep"]
