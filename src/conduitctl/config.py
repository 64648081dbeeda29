"""Configuration loader for conduitctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``/etc/conduitctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``CONDUITCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export CONDUITCTL_ENGINE__PULL_TIMEOUT=120
    export CONDUITCTL_DASHBOARD__REFRESH_INTERVAL=5

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.

This is the *application* configuration (paths, binaries, timeouts). The
operator's workload settings (max clients, bandwidth) live in the separate
``settings.conf`` handled by :mod:`conduitctl.settings`.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load conduitctl configuration. Install with "
        "`pip install conduitctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "CONDUITCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class WorkloadConfig:
    """Identity of the supervised container and how it is created."""

    container_name: str = "conduit"
    image: str = "ghcr.io/ssmirr/conduit/conduit:87cc1a3"
    volume: str = "conduit-data"
    data_mount: str = "/home/conduit/data"
    network: str = "host"
    restart_policy: str = "unless-stopped"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "container_name": self.container_name,
            "image": self.image,
            "volume": self.volume,
            "data_mount": self.data_mount,
            "network": self.network,
            "restart_policy": self.restart_policy,
        }


@dataclass(frozen=True)
class EngineConfig:
    """Daemon endpoint, CLI location and time bounds for engine calls.

    ``docker_host`` is handed to the SDK client; ``None`` defers to
    ``DOCKER_HOST``. ``docker_bin`` is what the init scripts invoke.
    """

    docker_bin: str = "docker"
    docker_host: str | None = None
    command_timeout: float = 60.0
    pull_timeout: float = 300.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "docker_bin": self.docker_bin,
            "docker_host": self.docker_host,
            "command_timeout": self.command_timeout,
            "pull_timeout": self.pull_timeout,
        }


@dataclass(frozen=True)
class DashboardConfig:
    """Refresh cadence and log window sizes for the live views."""

    refresh_interval: float = 10.0
    log_tail: int = 1000
    stats_tail: int = 200
    logs_tail: int = 100

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "refresh_interval": self.refresh_interval,
            "log_tail": self.log_tail,
            "stats_tail": self.stats_tail,
            "logs_tail": self.logs_tail,
        }


@dataclass(frozen=True)
class ServiceConfig:
    """Init-system integration paths and binaries."""

    systemd_dir: Path = Path("/etc/systemd/system")
    systemd_runtime_dir: Path = Path("/run/systemd/system")
    init_dir: Path = Path("/etc/init.d")
    openrc_runlevel_dir: Path = Path("/etc/runlevels/default")
    systemctl_bin: str = "systemctl"
    rc_update_bin: str = "rc-update"
    update_rc_bin: str = "update-rc.d"
    chkconfig_bin: str = "chkconfig"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "systemd_dir": str(self.systemd_dir),
            "systemd_runtime_dir": str(self.systemd_runtime_dir),
            "init_dir": str(self.init_dir),
            "openrc_runlevel_dir": str(self.openrc_runlevel_dir),
            "systemctl_bin": self.systemctl_bin,
            "rc_update_bin": self.rc_update_bin,
            "update_rc_bin": self.update_rc_bin,
            "chkconfig_bin": self.chkconfig_bin,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for conduitctl."""

    config_file: Path
    install_dir: Path
    settings_file: Path
    logs_dir: Path
    templates_dir: Path
    workload: WorkloadConfig
    engine: EngineConfig
    dashboard: DashboardConfig
    service: ServiceConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "install_dir": str(self.install_dir),
            "settings_file": str(self.settings_file),
            "logs_dir": str(self.logs_dir),
            "templates_dir": str(self.templates_dir),
            "workload": self.workload.to_dict(),
            "engine": self.engine.to_dict(),
            "dashboard": self.dashboard.to_dict(),
            "service": self.service.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/conduitctl/config.yml",
    "install_dir": "/opt/conduit",
    "settings_file": None,  # derived from install_dir when absent
    "logs_dir": "/var/log/conduitctl",
    "templates_dir": "/etc/conduitctl/templates",
    "workload": WorkloadConfig().to_dict(),
    "engine": EngineConfig().to_dict(),
    "dashboard": DashboardConfig().to_dict(),
    "service": ServiceConfig().to_dict(),
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    "workload": set(WorkloadConfig().to_dict()),
    "engine": set(EngineConfig().to_dict()),
    "dashboard": set(DashboardConfig().to_dict()),
    "service": set(ServiceConfig().to_dict()),
}
ALLOWED_NETWORK_MODES = {"host", "bridge"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    workload = _as_dict(raw.get("workload"), "workload")
    network = workload.get("network")
    if network is not None and str(network) not in ALLOWED_NETWORK_MODES:
        allowed_modes = ", ".join(sorted(ALLOWED_NETWORK_MODES))
        raise ConfigError(
            f"Unsupported workload network mode '{network}'. Allowed: {allowed_modes}."
        )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    install_dir = _to_path(raw.get("install_dir"))
    settings_value = raw.get("settings_file")
    settings_file = _to_path(settings_value) if settings_value else install_dir / "settings.conf"
    logs_dir = _to_path(raw.get("logs_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))

    defaults_workload = WorkloadConfig()
    workload_mapping = _as_dict(raw.get("workload"), "workload")
    workload = WorkloadConfig(
        container_name=_expect_name(
            workload_mapping.get("container_name", defaults_workload.container_name),
            "workload.container_name",
        ),
        image=str(workload_mapping.get("image", defaults_workload.image)),
        volume=_expect_name(
            workload_mapping.get("volume", defaults_workload.volume),
            "workload.volume",
        ),
        data_mount=str(workload_mapping.get("data_mount", defaults_workload.data_mount)),
        network=str(workload_mapping.get("network", defaults_workload.network)),
        restart_policy=str(
            workload_mapping.get("restart_policy", defaults_workload.restart_policy)
        ),
    )

    defaults_engine = EngineConfig()
    engine_mapping = _as_dict(raw.get("engine"), "engine")
    engine = EngineConfig(
        docker_bin=str(engine_mapping.get("docker_bin", defaults_engine.docker_bin)),
        docker_host=_optional_str(engine_mapping.get("docker_host"), "engine.docker_host"),
        command_timeout=_expect_positive_float(
            engine_mapping.get("command_timeout"),
            "engine.command_timeout",
            default=defaults_engine.command_timeout,
        ),
        pull_timeout=_expect_positive_float(
            engine_mapping.get("pull_timeout"),
            "engine.pull_timeout",
            default=defaults_engine.pull_timeout,
        ),
    )

    defaults_dashboard = DashboardConfig()
    dashboard_mapping = _as_dict(raw.get("dashboard"), "dashboard")
    dashboard = DashboardConfig(
        refresh_interval=_expect_positive_float(
            dashboard_mapping.get("refresh_interval"),
            "dashboard.refresh_interval",
            default=defaults_dashboard.refresh_interval,
        ),
        log_tail=_expect_positive_int(
            dashboard_mapping.get("log_tail"),
            "dashboard.log_tail",
            default=defaults_dashboard.log_tail,
        ),
        stats_tail=_expect_positive_int(
            dashboard_mapping.get("stats_tail"),
            "dashboard.stats_tail",
            default=defaults_dashboard.stats_tail,
        ),
        logs_tail=_expect_positive_int(
            dashboard_mapping.get("logs_tail"),
            "dashboard.logs_tail",
            default=defaults_dashboard.logs_tail,
        ),
    )

    defaults_service = ServiceConfig()
    service_mapping = _as_dict(raw.get("service"), "service")
    service = ServiceConfig(
        systemd_dir=_to_path(service_mapping.get("systemd_dir", defaults_service.systemd_dir)),
        systemd_runtime_dir=_to_path(
            service_mapping.get("systemd_runtime_dir", defaults_service.systemd_runtime_dir)
        ),
        init_dir=_to_path(service_mapping.get("init_dir", defaults_service.init_dir)),
        openrc_runlevel_dir=_to_path(
            service_mapping.get("openrc_runlevel_dir", defaults_service.openrc_runlevel_dir)
        ),
        systemctl_bin=str(service_mapping.get("systemctl_bin", defaults_service.systemctl_bin)),
        rc_update_bin=str(service_mapping.get("rc_update_bin", defaults_service.rc_update_bin)),
        update_rc_bin=str(service_mapping.get("update_rc_bin", defaults_service.update_rc_bin)),
        chkconfig_bin=str(service_mapping.get("chkconfig_bin", defaults_service.chkconfig_bin)),
    )

    return AppConfig(
        config_file=config_file,
        install_dir=install_dir,
        settings_file=settings_file,
        logs_dir=logs_dir,
        templates_dir=templates_dir,
        workload=workload,
        engine=engine,
        dashboard=dashboard,
        service=service,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_name(value: object, label: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{label} must be a non-empty string.")
    if any(char.isspace() for char in value) or "/" in value:
        raise ConfigError(f"{label} must not contain whitespace or '/': {value!r}.")
    return value.strip()


def _expect_positive_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        numeric = value
    elif isinstance(value, str):
        try:
            numeric = int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    else:
        raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _optional_str(value: object | None, label: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"Expected {label} to be a string. Got {type(value).__name__}.")
    return value.strip() or None


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "DashboardConfig",
    "EngineConfig",
    "ServiceConfig",
    "WorkloadConfig",
    "load_config",
]
