"""Tests for the conduitctl command line."""
from __future__ import annotations

import json
import shutil
from pathlib import Path
from types import SimpleNamespace

import pytest
import yaml
from docker.errors import APIError, DockerException
from docker.errors import NotFound as DockerNotFound
from typer.testing import CliRunner

from conduitctl import __version__
from conduitctl.cli import app
from conduitctl.providers.docker import DockerEngine

runner = CliRunner()

STATS_LINE = (
    "2025/01/05 12:00:00 [STATS] Connecting: 3 | Connected: 42 | "
    "Up: 1.2MB/s | Down: 3.4MB/s | Uptime: 2h5m"
)


class FakeContainer:
    """Container handle returned by :class:`FakeDocker`."""

    id = "abc123"

    def __init__(self, daemon: FakeDocker) -> None:
        """Bind the handle to the fake daemon's state."""
        self._daemon = daemon

    @property
    def attrs(self) -> dict[str, object]:
        """Return the inspect payload for the current state."""
        state = self._daemon.container
        return {"State": {"Status": state, "Running": state == "running"}}

    def start(self) -> None:
        """Mark the container running."""
        self._daemon.record("start")
        self._daemon.container = "running"

    def stop(self) -> None:
        """Mark the container exited."""
        self._daemon.record("stop")
        self._daemon.container = "exited"

    def restart(self) -> None:
        """Mark the container running."""
        self._daemon.record("restart")
        self._daemon.container = "running"

    def remove(self, force: bool = False) -> None:
        """Forget the container."""
        self._daemon.record("remove")
        self._daemon.container = None

    def logs(self, **kwargs: object) -> bytes:
        """Return the configured log output."""
        self._daemon.record("logs", kwargs)
        return self._daemon.log_output.encode("utf-8")

    def stats(self, stream: bool = True) -> dict[str, object]:
        """Return a one-shot stats payload worth 1.5% CPU and 20MiB of memory."""
        self._daemon.record("stats", {"stream": stream})
        return {
            "cpu_stats": {
                "cpu_usage": {"total_usage": 1150},
                "system_cpu_usage": 20000,
                "online_cpus": 1,
            },
            "precpu_stats": {"cpu_usage": {"total_usage": 1000}, "system_cpu_usage": 10000},
            "memory_stats": {"usage": 20 * 1024**2, "limit": 1024**3, "stats": {}},
        }


class FakeCollection:
    """The ``containers``/``images``/``volumes`` managers of the fake client."""

    def __init__(self, daemon: FakeDocker, prefix: str) -> None:
        """Record calls under *prefix*."""
        self._daemon = daemon
        self._prefix = prefix

    def get(self, name: str) -> object:
        """Return the container or volume, or raise the SDK's ``NotFound``."""
        self._daemon.record(f"{self._prefix}get")
        if self._prefix == "volumes.":
            return SimpleNamespace(remove=lambda: self._daemon.record("volumes.remove"))
        if self._daemon.container is None:
            raise DockerNotFound(f"No such container: {name}")
        return FakeContainer(self._daemon)

    def create(self, **kwargs: object) -> FakeContainer:
        """Create the container."""
        self._daemon.record("create", kwargs)
        self._daemon.container = "created"
        return FakeContainer(self._daemon)

    def pull(self, image: str) -> None:
        """Pretend to pull *image*."""
        self._daemon.record("pull", image)

    def remove(self, image: str) -> None:
        """Pretend to remove *image*."""
        self._daemon.record("images.remove", image)


class FakeDocker:
    """In-memory stand-in for ``docker.DockerClient``."""

    def __init__(self) -> None:
        """Start with a reachable daemon and no container."""
        self.daemon_up = True
        self.container: str | None = None
        self.log_output = ""
        self.fail: dict[str, Exception] = {}
        self.calls: list[tuple[str, object]] = []
        self.api = SimpleNamespace(timeout=60.0)
        self.containers = FakeCollection(self, "")
        self.images = FakeCollection(self, "images.")
        self.volumes = FakeCollection(self, "volumes.")

    def record(self, verb: str, payload: object = None) -> None:
        """Log one SDK call, raising the failure configured for *verb*."""
        self.calls.append((verb, payload))
        if verb in self.fail:
            raise self.fail[verb]

    def verbs(self) -> list[str]:
        """Return the name of every SDK call in order."""
        return [verb for verb, _ in self.calls]

    def payload(self, verb: str) -> object:
        """Return the arguments of the first *verb* call."""
        return next(payload for name, payload in self.calls if name == verb)

    def connect(self) -> FakeDocker:
        """Return this client, or fail like the SDK does with no daemon."""
        if not self.daemon_up:
            raise DockerException(
                "Error while fetching server API version: "
                "('Connection aborted.', FileNotFoundError(2, 'No such file or directory'))"
            )
        return self

    def ping(self) -> bool:
        """Answer the availability check."""
        self.record("ping")
        return True


@pytest.fixture
def docker(monkeypatch: pytest.MonkeyPatch) -> FakeDocker:
    """Route every engine call through :class:`FakeDocker`."""
    fake = FakeDocker()
    monkeypatch.setattr(DockerEngine, "_connect", lambda self: fake.connect())
    return fake


def _prepare_environment(tmp_path: Path) -> tuple[dict[str, str], Path]:
    """Write a config rooted in *tmp_path* and return (env, install_dir)."""
    install_dir = tmp_path / "conduit"
    config = {
        "install_dir": str(install_dir),
        "logs_dir": str(tmp_path / "logs"),
        "templates_dir": str(tmp_path / "templates"),
        "service": {
            "systemd_dir": str(tmp_path / "systemd"),
            "systemd_runtime_dir": str(tmp_path / "no-systemd"),
            "init_dir": str(tmp_path / "no-init.d"),
            "openrc_runlevel_dir": str(tmp_path / "no-runlevels"),
            "systemctl_bin": "conduitctl-test-missing-systemctl",
            "rc_update_bin": "conduitctl-test-missing-rc-update",
        },
    }
    config_path = tmp_path / "config.yml"
    config_path.write_text(yaml.safe_dump(config), encoding="utf-8")
    return {"CONDUITCTL_CONFIG_FILE": str(config_path)}, install_dir


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


def _operations(tmp_path: Path) -> list[dict[str, object]]:
    path = tmp_path / "logs" / "operations.jsonl"
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_version_option_outputs_package_version(tmp_path: Path) -> None:
    """CLI ``--version`` flag emits the package version."""
    env, _ = _prepare_environment(tmp_path)
    result = runner.invoke(app, ["--version"], env=env)

    assert result.exit_code == 0
    assert f"conduitctl {__version__}" in result.stdout


def test_invocation_without_subcommand_opens_menu(tmp_path: Path, docker: FakeDocker) -> None:
    """Calling the CLI without a subcommand shows the menu; Enter exits."""
    env, _ = _prepare_environment(tmp_path)
    result = runner.invoke(app, env=env, input="\n")

    assert result.exit_code == 0
    assert "Conduit Manager" in result.stdout
    assert "View status dashboard" in result.stdout


def test_help_command_lists_commands(tmp_path: Path) -> None:
    """``help`` prints the command overview."""
    env, _ = _prepare_environment(tmp_path)
    result = runner.invoke(app, ["help"], env=env)

    assert result.exit_code == 0
    assert "uninstall" in result.stdout
    assert "dashboard" in result.stdout


def test_settings_rejects_out_of_range_value(tmp_path: Path, docker: FakeDocker) -> None:
    """An invalid value warns, keeps the current setting and touches nothing."""
    env, install_dir = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["settings", "--max-clients", "5000"], env=env)

    assert result.exit_code == 0
    assert "Warning:" in result.stdout
    assert "Settings unchanged." in result.stdout
    assert docker.calls == []
    assert not (install_dir / "settings.conf").exists()


def test_settings_applies_and_recreates(tmp_path: Path, docker: FakeDocker) -> None:
    """A valid change is persisted and the container recreated."""
    env, install_dir = _prepare_environment(tmp_path)
    docker.container = "running"

    result = runner.invoke(app, ["settings", "--max-clients", "300"], env=env)

    assert result.exit_code == 0, result.stdout
    settings = (install_dir / "settings.conf").read_text(encoding="utf-8")
    assert settings == "MAX_CLIENTS=300\nBANDWIDTH=5\n"
    assert docker.verbs() == ["ping", "get", "remove", "pull", "create", "get", "start", "get"]
    create = docker.payload("create")
    assert create["command"][-6:] == [  # type: ignore[index]
        "start",
        "--max-clients",
        "300",
        "--bandwidth",
        "5",
        "-v",
    ]
    assert create["volumes"] == {  # type: ignore[index]
        "conduit-data": {"bind": "/home/conduit/data", "mode": "rw"}
    }
    assert create["restart_policy"] == {"Name": "unless-stopped"}  # type: ignore[index]
    assert "Settings updated and Conduit restarted." in result.stdout
    # no init system in the test environment: restart policy fallback is reported
    assert "unless-stopped" in result.stdout
    assert docker.container == "running"


def test_install_with_flags_skips_prompts(tmp_path: Path, docker: FakeDocker) -> None:
    """``install --yes`` saves the chosen settings and brings the workload up."""
    env, install_dir = _prepare_environment(tmp_path)

    result = runner.invoke(
        app,
        ["install", "--yes", "--max-clients", "300", "--bandwidth", "10"],
        env=env,
    )

    assert result.exit_code == 0, result.stdout
    settings = (install_dir / "settings.conf").read_text(encoding="utf-8")
    assert settings == "MAX_CLIENTS=300\nBANDWIDTH=10\n"
    assert docker.verbs() == ["ping", "get", "pull", "create", "get", "start", "get"]
    assert "Conduit is running." in result.stdout
    # auto-start falls back to the restart policy, which is reported as a warning
    assert "unless-stopped" in result.stdout
    record = _operations(tmp_path)[-1]
    assert record["command"] == "install"
    assert record["result"]["status"] == "warning"  # type: ignore[index]


def test_start_without_daemon_fails_with_guidance(
    tmp_path: Path,
    docker: FakeDocker,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """An unreachable daemon exits 1 and explains how to start Docker."""
    env, _ = _prepare_environment(tmp_path)
    docker.daemon_up = False
    monkeypatch.setattr(
        shutil,
        "which",
        lambda name: "/usr/bin/docker" if name == "docker" else None,
    )

    result = runner.invoke(app, ["start"], env=env)

    assert result.exit_code == 1
    assert "Docker daemon is not running." in result.stdout
    assert "sudo systemctl start docker" in result.stdout
    record = _operations(tmp_path)[-1]
    assert record["command"] == "start"
    assert record["result"]["status"] == "error"  # type: ignore[index]


def test_start_creates_missing_container(tmp_path: Path, docker: FakeDocker) -> None:
    """``start`` creates and starts the container when it does not exist."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["start"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "Conduit started." in result.stdout
    assert "create" in docker.verbs()
    assert docker.container == "running"


def test_start_when_running_is_noop(tmp_path: Path, docker: FakeDocker) -> None:
    """Starting a running container changes nothing."""
    env, _ = _prepare_environment(tmp_path)
    docker.container = "running"

    result = runner.invoke(app, ["start"], env=env)

    assert result.exit_code == 0
    assert "Conduit is already running." in result.stdout
    assert "start" not in docker.verbs()


def test_start_reports_create_failure(tmp_path: Path, docker: FakeDocker) -> None:
    """An engine error during creation exits 1 with the engine output."""
    env, _ = _prepare_environment(tmp_path)
    docker.fail["create"] = APIError(
        "409 Client Error: Conflict",
        explanation='Conflict. The container name "/conduit" is already in use.',
    )

    result = runner.invoke(app, ["start"], env=env)

    assert result.exit_code == 1
    assert "docker create conduit failed" in result.stdout
    assert "already in use" in result.stdout
    assert "start" not in docker.verbs()


def test_restart_missing_container_is_recoverable(tmp_path: Path, docker: FakeDocker) -> None:
    """Restarting an absent container warns and exits 0."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["restart"], env=env)

    assert result.exit_code == 0
    assert "does not exist" in result.stdout
    assert "restart" not in docker.verbs()


def test_stop_when_not_running(tmp_path: Path, docker: FakeDocker) -> None:
    """Stopping an absent container is a no-op."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["stop"], env=env)

    assert result.exit_code == 0
    assert "Conduit is not running." in result.stdout


def test_logs_filters_noise(tmp_path: Path, docker: FakeDocker) -> None:
    """Known transport noise is removed from displayed logs."""
    env, _ = _prepare_environment(tmp_path)
    docker.container = "running"
    docker.log_output = (
        "proxy starting\n"
        "dial tcp: context deadline exceeded\n"
        "port mapping: closed\n"
        f"{STATS_LINE}\n"
    )

    result = runner.invoke(app, ["logs", "-n", "5"], env=env)

    assert result.exit_code == 0
    assert "proxy starting" in result.stdout
    assert "[STATS] Connecting: 3" in result.stdout
    assert "deadline" not in result.stdout
    assert "port mapping" not in result.stdout
    assert docker.payload("logs") == {"stdout": True, "stderr": True, "tail": 5}


def test_logs_without_output(tmp_path: Path, docker: FakeDocker) -> None:
    """A container with no output says so."""
    env, _ = _prepare_environment(tmp_path)
    docker.container = "running"

    result = runner.invoke(app, ["logs"], env=env)

    assert result.exit_code == 0
    assert "No log output available." in result.stdout


def test_logs_for_absent_container(tmp_path: Path, docker: FakeDocker) -> None:
    """Asking for logs before the container exists warns instead of printing nothing."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["logs"], env=env)

    assert result.exit_code == 0
    assert "Conduit container not found." in result.stdout
    assert "No log output available." not in result.stdout
    assert "logs" not in docker.verbs()
    record = _operations(tmp_path)[-1]
    assert record["command"] == "logs"
    assert record["result"]["status"] == "warning"  # type: ignore[index]


def test_status_json_reports_telemetry(tmp_path: Path, docker: FakeDocker) -> None:
    """``status --json`` combines state, telemetry, usage and settings."""
    env, _ = _prepare_environment(tmp_path)
    docker.container = "running"
    docker.log_output = f"booting\n{STATS_LINE}\n"

    result = runner.invoke(app, ["status", "--json"], env=env)

    assert result.exit_code == 0, result.stdout
    payload = _extract_json(result.stdout)
    assert payload["state"] == "running"
    assert payload["telemetry"]["connected"] == 42  # type: ignore[index]
    assert payload["telemetry"]["completeness"] == "full"  # type: ignore[index]
    assert payload["resources"]["cpu_percent"] == "1.50%"  # type: ignore[index]
    assert payload["resources"]["memory_usage"] == "20MiB / 1GiB"  # type: ignore[index]
    assert docker.payload("stats") == {"stream": False}
    assert payload["settings"]["max_clients"] == 200  # type: ignore[index]
    assert payload["autostart"]["kind"] == "none"  # type: ignore[index]


def test_status_for_absent_container(tmp_path: Path, docker: FakeDocker) -> None:
    """An absent container reports N/A usage and no telemetry."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["status", "--json"], env=env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["state"] == "absent"
    assert payload["resources"]["cpu_percent"] == "N/A"  # type: ignore[index]
    assert payload["telemetry"]["completeness"] == "no_data"  # type: ignore[index]
    assert "logs" not in docker.verbs()


def test_uninstall_requires_confirmation(tmp_path: Path, docker: FakeDocker) -> None:
    """Without ``--yes`` anything but ``yes`` cancels."""
    env, _ = _prepare_environment(tmp_path)
    docker.container = "running"

    result = runner.invoke(app, ["uninstall"], env=env, input="no\n")

    assert result.exit_code == 0
    assert "Uninstall cancelled." in result.stdout
    assert docker.calls == []


def test_uninstall_removes_everything(tmp_path: Path, docker: FakeDocker) -> None:
    """Uninstall stops and removes the container, image, volume and settings."""
    env, install_dir = _prepare_environment(tmp_path)
    install_dir.mkdir()
    (install_dir / "settings.conf").write_text("MAX_CLIENTS=10\n", encoding="utf-8")
    docker.container = "running"

    result = runner.invoke(app, ["uninstall", "--yes"], env=env)

    assert result.exit_code == 0, result.stdout
    assert "Conduit has been uninstalled." in result.stdout
    assert docker.verbs() == [
        "ping",
        "get",
        "get",
        "stop",
        "get",
        "remove",
        "images.remove",
        "volumes.get",
        "volumes.remove",
    ]
    assert not install_dir.exists()
    record = _operations(tmp_path)[-1]
    assert record["command"] == "uninstall"
    assert record["result"]["status"] == "success"  # type: ignore[index]


def test_config_show_json(tmp_path: Path) -> None:
    """``config show --json`` emits the resolved configuration."""
    env, install_dir = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["config", "show", "--json"], env=env)

    assert result.exit_code == 0
    payload = _extract_json(result.stdout)
    assert payload["install_dir"] == str(install_dir)
    assert payload["settings_file"] == str(install_dir / "settings.conf")
    assert payload["workload"]["container_name"] == "conduit"  # type: ignore[index]


def test_config_show_renders_table(tmp_path: Path) -> None:
    """``config show`` prints the merged configuration in a table."""
    env, _ = _prepare_environment(tmp_path)

    result = runner.invoke(app, ["config", "show"], env=env)

    assert result.exit_code == 0
    assert "settings_file" in result.stdout
    assert "restart_policy: unless-stopped" in result.stdout
