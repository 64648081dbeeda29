"""Persisted workload settings (``settings.conf``).

The settings file is a flat, shell-compatible ``KEY=value`` document::

    MAX_CLIENTS=200
    BANDWIDTH=5

``CPU_LIMIT`` and ``MEMORY_LIMIT`` lines appear only when those optional limits
are set. The file is always rewritten wholesale through :meth:`SettingsStore.save`
using an atomic replace, so a failed write leaves the previous file untouched.

Values are validated on the way in and on the way out: a record never holds an
out-of-range field. Invalid operator input raises :class:`ConfigInvalid`, which
callers absorb by keeping the previous value (see :func:`merge_settings`).
"""
from __future__ import annotations

import logging
import math
import os
import re
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path

from .errors import ConfigInvalid, PersistenceFailure

LOGGER = logging.getLogger(__name__)

MAX_CLIENTS_RANGE = (1, 1000)
BANDWIDTH_RANGE = (1.0, 40.0)
UNLIMITED_BANDWIDTH = -1.0
DEFAULT_MAX_CLIENTS = 200
DEFAULT_BANDWIDTH = 5.0
MIN_MEMORY_LIMIT = 6 * 1024 * 1024

KEY_MAX_CLIENTS = "MAX_CLIENTS"
KEY_BANDWIDTH = "BANDWIDTH"
KEY_CPU_LIMIT = "CPU_LIMIT"
KEY_MEMORY_LIMIT = "MEMORY_LIMIT"

_INT_PATTERN = re.compile(r"^\d+$")
_DECIMAL_PATTERN = re.compile(r"^(\d+(\.\d+)?|\.\d+)$")
_MEMORY_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)\s*([bkmg]?)b?$", re.IGNORECASE)
_MEMORY_UNITS = {"": 1, "b": 1, "k": 1024, "m": 1024**2, "g": 1024**3}


def parse_max_clients(value: object) -> int:
    """Return *value* as a max-clients count or raise :class:`ConfigInvalid`."""
    text = str(value).strip()
    low, high = MAX_CLIENTS_RANGE
    if not _INT_PATTERN.match(text):
        raise ConfigInvalid(
            "max_clients", value, f"max-clients must be a whole number ({low}-{high})."
        )
    number = int(text)
    if not low <= number <= high:
        raise ConfigInvalid(
            "max_clients", value, f"max-clients must be between {low} and {high}."
        )
    return number


def parse_bandwidth(value: object) -> float:
    """Return *value* as Mbps, or ``-1`` for unlimited, or raise :class:`ConfigInvalid`."""
    text = str(value).strip().lower()
    if text in {"-1", "-1.0", "unlimited"}:
        return UNLIMITED_BANDWIDTH
    low, high = BANDWIDTH_RANGE
    if not _DECIMAL_PATTERN.match(text):
        raise ConfigInvalid(
            "bandwidth", value, f"bandwidth must be a number of Mbps ({low:g}-{high:g}) or -1."
        )
    number = float(text)
    if not low <= number <= high:
        raise ConfigInvalid(
            "bandwidth", value, f"bandwidth must be between {low:g} and {high:g} Mbps."
        )
    return number


def parse_cpu_limit(value: object) -> float | None:
    """Return a CPU core limit, ``None`` to clear it, or raise :class:`ConfigInvalid`."""
    text = str(value).strip().lower()
    if text in {"", "none", "0"}:
        return None
    try:
        number = float(text)
    except ValueError as exc:
        raise ConfigInvalid("cpu_limit", value, "cpu limit must be a number of cores.") from exc
    if not math.isfinite(number) or number <= 0:
        raise ConfigInvalid("cpu_limit", value, "cpu limit must be greater than zero.")
    return number


def parse_memory_limit(value: object) -> int | None:
    """Return a memory limit in bytes (``512m``, ``1g``...) or ``None`` to clear it."""
    text = str(value).strip().lower()
    if text in {"", "none", "0"}:
        return None
    match = _MEMORY_PATTERN.match(text)
    if match is None:
        raise ConfigInvalid(
            "memory_limit", value, "memory limit must look like 512m, 1g or a byte count."
        )
    number = int(float(match.group(1)) * _MEMORY_UNITS[match.group(2).lower()])
    if number < MIN_MEMORY_LIMIT:
        raise ConfigInvalid("memory_limit", value, "memory limit must be at least 6m.")
    return number


def format_bandwidth(value: float) -> str:
    """Render a bandwidth value the way the settings file stores it."""
    if value == UNLIMITED_BANDWIDTH:
        return "-1"
    if float(value).is_integer():
        return str(int(value))
    return f"{value:g}"


def format_memory(value: int | None) -> str:
    """Render a byte count using the largest exact docker unit."""
    if value is None:
        return "none"
    for suffix, factor in (("g", 1024**3), ("m", 1024**2), ("k", 1024)):
        if value % factor == 0:
            return f"{value // factor}{suffix}"
    return str(value)


@dataclass(frozen=True)
class SettingsRecord:
    """Desired configuration for the workload."""

    max_clients: int = DEFAULT_MAX_CLIENTS
    bandwidth_mbps: float = DEFAULT_BANDWIDTH
    cpu_limit: float | None = None
    memory_limit: int | None = None

    def __post_init__(self) -> None:
        """Reject records carrying out-of-range fields."""
        parse_max_clients(self.max_clients)
        if self.bandwidth_mbps != UNLIMITED_BANDWIDTH:
            parse_bandwidth(format_bandwidth(self.bandwidth_mbps))
        if self.cpu_limit is not None and parse_cpu_limit(self.cpu_limit) is None:
            raise ConfigInvalid(
                "cpu_limit", self.cpu_limit, "cpu limit must be greater than zero."
            )
        if self.memory_limit is not None and self.memory_limit < MIN_MEMORY_LIMIT:
            raise ConfigInvalid(
                "memory_limit", self.memory_limit, "memory limit must be at least 6m."
            )

    @property
    def unlimited_bandwidth(self) -> bool:
        """Return ``True`` when the bandwidth sentinel is set."""
        return self.bandwidth_mbps == UNLIMITED_BANDWIDTH

    def bandwidth_label(self) -> str:
        """Human-readable bandwidth (``5 Mbps`` or ``unlimited``)."""
        if self.unlimited_bandwidth:
            return "unlimited"
        return f"{format_bandwidth(self.bandwidth_mbps)} Mbps"

    def workload_args(self) -> list[str]:
        """Return the flags passed to the proxy binary."""
        return [
            "--max-clients",
            str(self.max_clients),
            "--bandwidth",
            format_bandwidth(self.bandwidth_mbps),
        ]

    def to_lines(self) -> list[str]:
        """Serialise the record into ``KEY=value`` lines."""
        lines = [
            f"{KEY_MAX_CLIENTS}={self.max_clients}",
            f"{KEY_BANDWIDTH}={format_bandwidth(self.bandwidth_mbps)}",
        ]
        if self.cpu_limit is not None:
            lines.append(f"{KEY_CPU_LIMIT}={self.cpu_limit:g}")
        if self.memory_limit is not None:
            lines.append(f"{KEY_MEMORY_LIMIT}={self.memory_limit}")
        return lines

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "max_clients": self.max_clients,
            "bandwidth_mbps": self.bandwidth_mbps,
            "cpu_limit": self.cpu_limit,
            "memory_limit": self.memory_limit,
        }


@dataclass(slots=True)
class SettingsUpdate:
    """Outcome of merging operator input into a settings record."""

    record: SettingsRecord
    warnings: list[str] = field(default_factory=list)
    changed: bool = False


def merge_settings(
    current: SettingsRecord,
    *,
    max_clients: object | None = None,
    bandwidth: object | None = None,
    cpu_limit: object | None = None,
    memory_limit: object | None = None,
) -> SettingsUpdate:
    """Build a new record from *current* and raw operator input.

    Each supplied value is validated independently. An invalid value keeps the
    current field and adds a warning; it never aborts the merge.
    """
    updates: dict[str, object] = {}
    warnings: list[str] = []
    parsers = (
        ("max_clients", max_clients, parse_max_clients),
        ("bandwidth_mbps", bandwidth, parse_bandwidth),
        ("cpu_limit", cpu_limit, parse_cpu_limit),
        ("memory_limit", memory_limit, parse_memory_limit),
    )
    for attribute, raw, parser in parsers:
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            continue
        try:
            updates[attribute] = parser(raw)
        except ConfigInvalid as exc:
            kept = getattr(current, attribute)
            warnings.append(f"{exc} Keeping current value: {kept}.")
    record = replace(current, **updates) if updates else current
    return SettingsUpdate(record=record, warnings=warnings, changed=record != current)


@dataclass(slots=True)
class SettingsLoad:
    """Result of reading the settings file."""

    record: SettingsRecord
    exists: bool
    warnings: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class SettingsStore:
    """Read and atomically write ``settings.conf``."""

    path: Path

    def exists(self) -> bool:
        """Return ``True`` when the settings file is present."""
        return self.path.exists()

    def load(self) -> SettingsRecord:
        """Return the persisted record, substituting defaults where needed."""
        return self.read().record

    def read(self) -> SettingsLoad:
        """Parse the settings file, collecting warnings for bad values."""
        if not self.path.exists():
            return SettingsLoad(record=SettingsRecord(), exists=False)
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            LOGGER.warning("unable to read %s: %s", self.path, exc)
            return SettingsLoad(
                record=SettingsRecord(),
                exists=True,
                warnings=[f"Unable to read {self.path}: {exc}. Using defaults."],
            )
        return _parse_settings(parse_key_values(text), exists=True)

    def save(self, record: SettingsRecord) -> None:
        """Atomically replace the settings file with *record*."""
        content = "\n".join(record.to_lines()) + "\n"
        directory = self.path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(dir=str(directory), prefix=f".{self.path.name}.")
        except OSError as exc:
            raise PersistenceFailure(
                f"Failed to save settings to {self.path}: {exc}. "
                "Check disk space and permissions."
            ) from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_path, 0o644)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise PersistenceFailure(
                f"Failed to save settings to {self.path}: {exc}. "
                "Check disk space and permissions."
            ) from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def purge(self) -> bool:
        """Delete the settings file and its directory when left empty."""
        removed = False
        try:
            self.path.unlink()
            removed = True
        except FileNotFoundError:
            pass
        try:
            self.path.parent.rmdir()
        except OSError:
            pass
        return removed


def parse_key_values(text: str) -> dict[str, str]:
    """Parse shell-style ``KEY=value`` lines, ignoring comments and blanks."""
    values: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export ") :].strip()
        key, _, value = line.partition("=")
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        values[key.strip()] = value
    return values


def _parse_settings(values: Mapping[str, str], *, exists: bool) -> SettingsLoad:
    warnings: list[str] = []
    defaults = SettingsRecord()
    fields: dict[str, object] = {}
    parsers = (
        (KEY_MAX_CLIENTS, "max_clients", parse_max_clients),
        (KEY_BANDWIDTH, "bandwidth_mbps", parse_bandwidth),
        (KEY_CPU_LIMIT, "cpu_limit", parse_cpu_limit),
        (KEY_MEMORY_LIMIT, "memory_limit", parse_memory_limit),
    )
    for key, attribute, parser in parsers:
        raw = values.get(key)
        if raw is None or raw == "":
            continue
        try:
            fields[attribute] = parser(raw)
        except ConfigInvalid as exc:
            default = getattr(defaults, attribute)
            warnings.append(f"Invalid {key} in settings file ({exc}). Using default: {default}.")
    record = SettingsRecord(**fields)  # type: ignore[arg-type]
    return SettingsLoad(record=record, exists=exists, warnings=warnings)


def detect_ram_gb(meminfo: Path = Path("/proc/meminfo")) -> int:
    """Return total host RAM in whole GiB, never less than 1."""
    try:
        text = meminfo.read_text(encoding="utf-8")
    except OSError:
        return 1
    for line in text.splitlines():
        if line.startswith("MemTotal:"):
            parts = line.split()
            if len(parts) >= 2 and parts[1].isdigit():
                return max(1, int(parts[1]) // 1024 // 1024)
    return 1


def recommended_max_clients(ram_gb: int) -> int:
    """Suggest a max-clients value for a host with *ram_gb* of memory."""
    if ram_gb >= 8:
        return 1000
    if ram_gb >= 4:
        return 700
    if ram_gb >= 2:
        return 400
    return DEFAULT_MAX_CLIENTS


__all__ = [
    "BANDWIDTH_RANGE",
    "DEFAULT_BANDWIDTH",
    "DEFAULT_MAX_CLIENTS",
    "MAX_CLIENTS_RANGE",
    "UNLIMITED_BANDWIDTH",
    "SettingsLoad",
    "SettingsRecord",
    "SettingsStore",
    "SettingsUpdate",
    "detect_ram_gb",
    "format_bandwidth",
    "format_memory",
    "merge_settings",
    "parse_bandwidth",
    "parse_cpu_limit",
    "parse_key_values",
    "parse_max_clients",
    "parse_memory_limit",
    "recommended_max_clients",
]
