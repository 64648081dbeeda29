"""Docker engine provider used to manage the workload container.

All engine calls go through the docker SDK. Its exceptions are classified here
so callers only ever see the :mod:`conduitctl.errors` taxonomy: an unreachable
daemon becomes :class:`EngineUnavailable`, a missing object becomes
:class:`NotFound` (or an "absent" return value where absence is expected), and
any other API failure becomes :class:`EngineOperationFailed` carrying the
daemon's explanation.
"""
from __future__ import annotations

import logging
import os
import shutil
import threading
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

import docker
import requests
from docker.errors import APIError, DockerException, ImageNotFound
from docker.errors import NotFound as DockerNotFound

from ..errors import (
    ENGINE_INSTALL_REMEDIATION,
    ENGINE_PERMISSION_REMEDIATION,
    EngineOperationFailed,
    EngineUnavailable,
    NotFound,
    tail_lines,
)

LOGGER = logging.getLogger(__name__)

_BYTE_UNITS = ("B", "KiB", "MiB", "GiB", "TiB", "PiB")


@dataclass(frozen=True)
class ContainerSpec:
    """Everything ``containers.create`` needs to build the workload container."""

    name: str
    image: str
    volumes: tuple[tuple[str, str], ...] = ()
    network: str = "host"
    restart_policy: str = "unless-stopped"
    command: tuple[str, ...] = ()
    cpu_limit: float | None = None
    memory_limit: int | None = None

    def create_kwargs(self) -> dict[str, Any]:
        """Return the keyword arguments for ``client.containers.create``."""
        kwargs: dict[str, Any] = {
            "image": self.image,
            "command": list(self.command),
            "name": self.name,
            "network_mode": self.network,
            "restart_policy": {"Name": self.restart_policy},
            "volumes": {source: {"bind": target, "mode": "rw"} for source, target in self.volumes},
        }
        if self.cpu_limit is not None:
            kwargs["nano_cpus"] = int(round(self.cpu_limit * 1_000_000_000))
        if self.memory_limit is not None:
            kwargs["mem_limit"] = self.memory_limit
        return kwargs


@dataclass(slots=True)
class ResourceSample:
    """One ``docker stats``-style reading, already formatted for display."""

    cpu_percent: str
    memory_usage: str
    memory_percent: str


def format_bytes(value: float) -> str:
    """Render *value* with binary units the way ``docker stats`` does."""
    size = float(value)
    for unit in _BYTE_UNITS:
        if abs(size) < 1024 or unit == _BYTE_UNITS[-1]:
            return f"{size:.4g}{unit}"
        size /= 1024
    return f"{size:.4g}{_BYTE_UNITS[-1]}"  # pragma: no cover - loop always returns


def resource_sample(raw: Mapping[str, Any]) -> ResourceSample | None:
    """Convert a one-shot ``container.stats`` payload into a sample.

    Returns ``None`` when the payload lacks the counters needed (for example a
    container that stopped between the state check and the stats call).
    """
    try:
        cpu = raw["cpu_stats"]
        precpu = raw.get("precpu_stats") or {}
        cpu_delta = cpu["cpu_usage"]["total_usage"] - precpu.get("cpu_usage", {}).get(
            "total_usage", 0
        )
        system_delta = cpu.get("system_cpu_usage", 0) - precpu.get("system_cpu_usage", 0)
        online = cpu.get("online_cpus") or len(cpu["cpu_usage"].get("percpu_usage") or []) or 1
        memory = raw["memory_stats"]
        usage = memory["usage"]
        limit = memory["limit"]
    except (KeyError, TypeError):
        return None
    cpu_percent = (cpu_delta / system_delta) * online * 100.0 if system_delta > 0 else 0.0
    counters = memory.get("stats") or {}
    inactive = counters.get("inactive_file", counters.get("total_inactive_file", 0))
    used = max(usage - inactive, 0)
    memory_percent = used / limit * 100.0 if limit else 0.0
    return ResourceSample(
        cpu_percent=f"{cpu_percent:.2f}%",
        memory_usage=f"{format_bytes(used)} / {format_bytes(limit)}",
        memory_percent=f"{memory_percent:.2f}%",
    )


class LogFollower:
    """A followed log stream that can be waited on with ``select``.

    The SDK stream blocks while it waits for output, so a reader thread copies
    its chunks into a pipe. :meth:`fileno` returns the pipe's read end and
    :meth:`read_lines` is called once ``select`` reports it readable.
    """

    def __init__(self, stream: Iterable[bytes]) -> None:
        """Start copying *stream* (``container.logs(stream=True, ...)``) into a pipe."""
        self._stream = stream
        self._read_fd, self._write_fd = os.pipe()
        self._buffer = b""
        self._closed = False
        self.exhausted = False
        self.error: BaseException | None = None
        self._thread = threading.Thread(target=self._pump, name="log-follower", daemon=True)
        self._thread.start()

    def _pump(self) -> None:
        try:
            for chunk in self._stream:
                if self._closed:
                    break
                view = memoryview(chunk)
                while view:
                    written = os.write(self._write_fd, view)
                    view = view[written:]
        except Exception as exc:  # noqa: BLE001 - handed to the reading thread
            if not self._closed:
                LOGGER.debug("log stream failed: %s", exc)
                self.error = exc
        finally:
            os.close(self._write_fd)

    def fileno(self) -> int:
        """Return the descriptor of the log pipe."""
        return self._read_fd

    def read_lines(self) -> list[str]:
        """Read what is available and return the complete lines received.

        Raises :class:`EngineOperationFailed` when the stream broke rather than
        ending normally.
        """
        chunk = os.read(self._read_fd, 65536)
        if not chunk:
            self.exhausted = True
            if self.error is not None:
                raise EngineOperationFailed(
                    "docker logs stream failed",
                    output=tail_lines(str(self.error)),
                ) from self.error
            remainder, self._buffer = self._buffer, b""
            return [remainder.decode("utf-8", errors="replace")] if remainder else []
        self._buffer += chunk
        *complete, self._buffer = self._buffer.split(b"\n")
        return [line.decode("utf-8", errors="replace").rstrip("\r") for line in complete]

    def close(self) -> None:
        """Stop the stream and release the pipe."""
        if self._closed:
            return
        self._closed = True
        close_stream = getattr(self._stream, "close", None)
        if callable(close_stream):
            close_stream()
        os.close(self._read_fd)
        self._thread.join(timeout=5)

    def __enter__(self) -> LogFollower:
        """Return the follower for use in a ``with`` block."""
        return self

    def __exit__(self, *exc_info: object) -> None:
        """Always stop the stream."""
        self.close()


@dataclass(slots=True)
class DockerEngine:
    """Classified wrapper around a ``docker.DockerClient``.

    The client is created lazily on first use. ``docker_host`` selects the
    daemon; when unset the SDK reads ``DOCKER_HOST`` and friends from the
    environment.
    """

    docker_bin: str = "docker"
    docker_host: str | None = None
    command_timeout: float = 60.0
    pull_timeout: float = 300.0
    _client: docker.DockerClient | None = field(default=None, init=False, repr=False)

    @property
    def client(self) -> docker.DockerClient:
        """Return the connected SDK client."""
        if self._client is None:
            try:
                self._client = self._connect()
            except (DockerException, requests.exceptions.RequestException) as exc:
                raise self._unavailable(exc) from exc
        return self._client

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------
    def info(self) -> None:
        """Raise :class:`EngineUnavailable` unless the daemon answers a ping."""
        try:
            self.client.ping()
        except (DockerException, requests.exceptions.RequestException) as exc:
            raise self._unavailable(exc) from exc

    # ------------------------------------------------------------------
    # Container lifecycle
    # ------------------------------------------------------------------
    def inspect_state(self, name: str) -> str | None:
        """Return the engine status (``running``, ``exited``...) or ``None`` if absent."""
        with self._classified(f"docker inspect {name}"):
            try:
                container = self.client.containers.get(name)
            except DockerNotFound:
                return None
        status = str(container.attrs.get("State", {}).get("Status", "")).strip().lower()
        return status or None

    def is_running(self, name: str) -> bool:
        """Return ``True`` when the engine reports the container running."""
        with self._classified(f"docker inspect {name}"):
            try:
                container = self.client.containers.get(name)
            except DockerNotFound:
                return False
        return bool(container.attrs.get("State", {}).get("Running"))

    def create(self, spec: ContainerSpec) -> str:
        """Create the container described by *spec* and return its id.

        A missing image is pulled first, as ``docker create`` would.
        """
        with self._classified(f"docker create {spec.name}"):
            try:
                container = self.client.containers.create(**spec.create_kwargs())
            except ImageNotFound:
                LOGGER.debug("image %s not present locally; pulling", spec.image)
                self._pull(spec.image)
                container = self.client.containers.create(**spec.create_kwargs())
        return str(container.id)

    def start(self, name: str) -> None:
        """Start an existing container."""
        with self._classified(f"docker start {name}"):
            self.client.containers.get(name).start()

    def stop(self, name: str) -> None:
        """Stop a running container."""
        with self._classified(f"docker stop {name}"):
            self.client.containers.get(name).stop()

    def restart(self, name: str) -> None:
        """Restart an existing container."""
        with self._classified(f"docker restart {name}"):
            self.client.containers.get(name).restart()

    def remove(self, name: str) -> bool:
        """Force-remove *name*; return ``False`` when it did not exist."""
        with self._classified(f"docker rm {name}"):
            try:
                self.client.containers.get(name).remove(force=True)
            except DockerNotFound:
                return False
        return True

    def pull(self, image: str) -> None:
        """Pull *image*, bounded by ``pull_timeout``."""
        with self._classified(f"docker pull {image}"):
            self._pull(image)

    def remove_image(self, image: str) -> bool:
        """Remove *image*; return ``False`` when it was not present."""
        with self._classified(f"docker rmi {image}"):
            try:
                self.client.images.remove(image)
            except DockerNotFound:
                return False
        return True

    def remove_volume(self, volume: str) -> bool:
        """Remove the named *volume*; return ``False`` when it was not present."""
        with self._classified(f"docker volume rm {volume}"):
            try:
                self.client.volumes.get(volume).remove()
            except DockerNotFound:
                return False
        return True

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------
    def stats(self, name: str) -> ResourceSample | None:
        """Return a single resource sample, or ``None`` when unavailable."""
        with self._classified(f"docker stats {name}"):
            try:
                raw = self.client.containers.get(name).stats(stream=False)
            except DockerNotFound:
                return None
        return resource_sample(raw)

    def logs(self, name: str, *, tail: int) -> list[str]:
        """Return the last *tail* log lines (stdout and stderr merged)."""
        with self._classified(f"docker logs {name}"):
            try:
                output = self.client.containers.get(name).logs(
                    stdout=True,
                    stderr=True,
                    tail=tail,
                )
            except DockerNotFound:
                return []
        return output.decode("utf-8", errors="replace").splitlines()

    def follow_logs(self, name: str, *, tail: int) -> LogFollower:
        """Follow the container's output, starting *tail* lines back."""
        with self._classified(f"docker logs {name}"):
            stream = self.client.containers.get(name).logs(
                stdout=True,
                stderr=True,
                stream=True,
                follow=True,
                tail=tail,
            )
        return LogFollower(stream)

    # ------------------------------------------------------------------
    def _connect(self) -> docker.DockerClient:
        if self.docker_host:
            return docker.DockerClient(base_url=self.docker_host, timeout=self.command_timeout)
        return docker.from_env(timeout=self.command_timeout)

    def _pull(self, image: str) -> None:
        api = self.client.api
        previous, api.timeout = api.timeout, self.pull_timeout
        try:
            self.client.images.pull(image)
        finally:
            api.timeout = previous

    def _unavailable(self, exc: BaseException) -> EngineUnavailable:
        LOGGER.debug("docker daemon unreachable: %s", exc)
        if shutil.which(self.docker_bin) is None and not self.docker_host:
            return EngineUnavailable(
                f"Docker is not installed ({self.docker_bin} not found).",
                remediation=ENGINE_INSTALL_REMEDIATION,
            )
        if "permission denied" in str(exc).lower():
            return EngineUnavailable(
                "Permission denied while connecting to the Docker daemon.",
                remediation=ENGINE_PERMISSION_REMEDIATION,
            )
        return EngineUnavailable("Docker daemon is not running.")

    @contextmanager
    def _classified(self, action: str) -> Iterator[None]:
        try:
            yield
        except DockerNotFound as exc:
            raise NotFound(f"{action}: {_explanation(exc)}") from exc
        except requests.exceptions.ConnectionError as exc:
            raise self._unavailable(exc) from exc
        except requests.exceptions.Timeout as exc:
            raise EngineOperationFailed(
                f"{action} timed out",
                output=tail_lines(str(exc)),
            ) from exc
        except APIError as exc:
            status = f" (HTTP {exc.status_code})" if exc.status_code else ""
            raise EngineOperationFailed(
                f"{action} failed{status}",
                output=tail_lines(_explanation(exc)),
            ) from exc
        except DockerException as exc:
            raise EngineOperationFailed(f"{action} failed", output=tail_lines(str(exc))) from exc


def _explanation(exc: APIError) -> str:
    explanation = exc.explanation
    if isinstance(explanation, bytes):
        explanation = explanation.decode("utf-8", errors="replace")
    return str(explanation or exc)


__all__ = [
    "ContainerSpec",
    "DockerEngine",
    "LogFollower",
    "ResourceSample",
    "format_bytes",
    "resource_sample",
]
