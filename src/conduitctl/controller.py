"""Lifecycle controller for the supervised workload container.

The controller owns the workload. It reconciles a :class:`SettingsRecord`
against the container the engine actually reports, one blocking docker call at a
time::

    ABSENT --create--> CREATED --start--> RUNNING --stop--> STOPPED
       ^                                                       |
       +------------------ remove (apply_settings) ------------+

``REMOVED`` is terminal and only reachable through :meth:`uninstall`.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from .config import WorkloadConfig
from .errors import ConduitError, EngineOperationFailed, NotFound
from .providers.docker import ContainerSpec, DockerEngine, LogFollower
from .settings import SettingsRecord, SettingsStore

LOGGER = logging.getLogger(__name__)

POLL_INTERVAL = 1.0
POLL_ATTEMPTS = 30
FAILURE_LOG_LINES = 10

UNAVAILABLE = "N/A"


class WorkloadState(str, Enum):
    """Lifecycle state of the workload container."""

    ABSENT = "absent"
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"
    REMOVED = "removed"


_ENGINE_STATES = {
    "created": WorkloadState.CREATED,
    "running": WorkloadState.RUNNING,
    "restarting": WorkloadState.RUNNING,
    "paused": WorkloadState.STOPPED,
    "exited": WorkloadState.STOPPED,
    "dead": WorkloadState.STOPPED,
    "removing": WorkloadState.STOPPED,
}


@dataclass(frozen=True)
class ResourceUsage:
    """CPU and memory figures reported by the engine."""

    cpu_percent: str
    memory_usage: str
    memory_percent: str
    available: bool = True

    @classmethod
    def unavailable(cls) -> ResourceUsage:
        """Return the placeholder used when usage cannot be reported."""
        return cls(UNAVAILABLE, UNAVAILABLE, UNAVAILABLE, available=False)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "cpu_percent": self.cpu_percent,
            "memory_usage": self.memory_usage,
            "memory_percent": self.memory_percent,
            "available": self.available,
        }


@dataclass(slots=True)
class ControllerResult:
    """Outcome of a lifecycle operation."""

    action: str
    state: WorkloadState
    changed: bool
    warnings: list[str] = field(default_factory=list)
    attempts: int = 0


class WorkloadController:
    """Reconcile desired settings against the engine's view of the workload."""

    def __init__(
        self,
        engine: DockerEngine,
        store: SettingsStore,
        workload: WorkloadConfig,
        *,
        sleep: Callable[[float], None] = time.sleep,
        poll_interval: float = POLL_INTERVAL,
        poll_attempts: int = POLL_ATTEMPTS,
    ) -> None:
        """Bind the controller to *engine* and the settings *store*."""
        self.engine = engine
        self.store = store
        self.workload = workload
        self._sleep = sleep
        self._poll_interval = poll_interval
        self._poll_attempts = poll_attempts
        self._removed = False

    @property
    def name(self) -> str:
        """Return the workload container name."""
        return self.workload.container_name

    def container_spec(self, settings: SettingsRecord) -> ContainerSpec:
        """Describe the container created for *settings*."""
        return ContainerSpec(
            name=self.workload.container_name,
            image=self.workload.image,
            volumes=((self.workload.volume, self.workload.data_mount),),
            network=self.workload.network,
            restart_policy=self.workload.restart_policy,
            command=("start", *settings.workload_args(), "-v"),
            cpu_limit=settings.cpu_limit,
            memory_limit=settings.memory_limit,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def status(self) -> WorkloadState:
        """Return the current lifecycle state."""
        if self._removed:
            return WorkloadState.REMOVED
        engine_state = self.engine.inspect_state(self.name)
        if engine_state is None:
            return WorkloadState.ABSENT
        return _ENGINE_STATES.get(engine_state, WorkloadState.STOPPED)

    def resource_usage(self) -> ResourceUsage:
        """Return engine-reported usage, or the unavailable placeholder."""
        if self.status() is not WorkloadState.RUNNING:
            return ResourceUsage.unavailable()
        try:
            sample = self.engine.stats(self.name)
        except EngineOperationFailed as exc:
            LOGGER.debug("docker stats unavailable: %s", exc)
            return ResourceUsage.unavailable()
        if sample is None:
            return ResourceUsage.unavailable()
        return ResourceUsage(
            cpu_percent=sample.cpu_percent,
            memory_usage=sample.memory_usage,
            memory_percent=sample.memory_percent,
        )

    def log_tail(self, lines: int) -> list[str]:
        """Return the last *lines* lines of workload output."""
        if self._removed:
            return []
        return self.engine.logs(self.name, tail=lines)

    def follow_logs(self, tail: int) -> LogFollower:
        """Stream workload output, starting *tail* lines back."""
        self._require_present("follow logs of")
        return self.engine.follow_logs(self.name, tail=tail)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def ensure_running(self, settings: SettingsRecord) -> ControllerResult:
        """Create and/or start the workload until the engine reports it running."""
        self._require_present("start")
        state = self.status()
        if state is WorkloadState.RUNNING:
            return ControllerResult(action="start", state=state, changed=False)
        if state is WorkloadState.ABSENT:
            self.engine.create(self.container_spec(settings))
        self.engine.start(self.name)
        attempts = self._wait_until_running()
        return ControllerResult(
            action="start",
            state=WorkloadState.RUNNING,
            changed=True,
            attempts=attempts,
        )

    def stop(self) -> ControllerResult:
        """Stop the workload when it is running; otherwise do nothing."""
        state = self.status()
        if state is not WorkloadState.RUNNING:
            return ControllerResult(action="stop", state=state, changed=False)
        self.engine.stop(self.name)
        return ControllerResult(action="stop", state=WorkloadState.STOPPED, changed=True)

    def restart(self) -> ControllerResult:
        """Restart an existing workload."""
        state = self.status()
        if state in {WorkloadState.ABSENT, WorkloadState.REMOVED}:
            raise NotFound(
                f"Container '{self.name}' does not exist. "
                "Use 'conduitctl start' to create it."
            )
        self.engine.restart(self.name)
        attempts = self._wait_until_running()
        return ControllerResult(
            action="restart",
            state=WorkloadState.RUNNING,
            changed=True,
            attempts=attempts,
        )

    def apply_settings(self, settings: SettingsRecord) -> ControllerResult:
        """Persist *settings* and recreate the workload with them.

        The settings file is written first; if that fails nothing else happens.
        The container is then removed (absence tolerated), the image refreshed on
        a best-effort basis, and a new container created and started. The data
        volume is never touched. When creation fails after removal the workload
        is left absent and the error propagates unchanged.
        """
        self._require_present("reconfigure")
        self.store.save(settings)

        warnings: list[str] = []
        self.engine.remove(self.name)
        try:
            self.engine.pull(self.workload.image)
        except EngineOperationFailed as exc:
            LOGGER.debug("image refresh failed: %s", exc)
            warnings.append(f"Could not refresh image {self.workload.image}; using cached image.")

        self.engine.create(self.container_spec(settings))
        self.engine.start(self.name)
        attempts = self._wait_until_running()
        return ControllerResult(
            action="apply_settings",
            state=WorkloadState.RUNNING,
            changed=True,
            warnings=warnings,
            attempts=attempts,
        )

    def uninstall(self) -> ControllerResult:
        """Remove the container, its image and its data volume."""
        self._require_present("uninstall")
        warnings: list[str] = []
        state = self.status()
        if state is WorkloadState.RUNNING:
            self.engine.stop(self.name)
        removed = self.engine.remove(self.name)
        try:
            removed = self.engine.remove_image(self.workload.image) or removed
        except EngineOperationFailed as exc:
            warnings.append(f"Could not remove image {self.workload.image}: {exc}")
        removed = self.engine.remove_volume(self.workload.volume) or removed
        self._removed = True
        return ControllerResult(
            action="uninstall",
            state=WorkloadState.REMOVED,
            changed=removed,
            warnings=warnings,
        )

    # ------------------------------------------------------------------
    def _require_present(self, action: str) -> None:
        if self._removed:
            raise NotFound(f"Cannot {action} '{self.name}': it has been uninstalled.")

    def _wait_until_running(self) -> int:
        for attempt in range(1, self._poll_attempts + 1):
            if self.engine.is_running(self.name):
                LOGGER.debug("%s running after %d attempt(s)", self.name, attempt)
                return attempt
            if attempt < self._poll_attempts:
                self._sleep(self._poll_interval)
        raise EngineOperationFailed(
            f"Conduit failed to start: '{self.name}' not running after "
            f"{self._poll_attempts} checks.",
            output=self._failure_output(),
        )

    def _failure_output(self) -> list[str]:
        try:
            return self.engine.logs(self.name, tail=FAILURE_LOG_LINES)
        except ConduitError as exc:
            LOGGER.debug("unable to collect logs after failed start: %s", exc)
            return []


__all__ = [
    "POLL_ATTEMPTS",
    "POLL_INTERVAL",
    "ControllerResult",
    "ResourceUsage",
    "WorkloadController",
    "WorkloadState",
]
