"""Tests for the persisted workload settings."""
from __future__ import annotations

import os
from pathlib import Path

import pytest

from conduitctl.errors import ConfigInvalid, PersistenceFailure
from conduitctl.settings import (
    DEFAULT_BANDWIDTH,
    DEFAULT_MAX_CLIENTS,
    SettingsRecord,
    SettingsStore,
    detect_ram_gb,
    format_memory,
    merge_settings,
    parse_bandwidth,
    parse_key_values,
    parse_memory_limit,
    recommended_max_clients,
)


def test_load_defaults_when_file_missing(store: SettingsStore) -> None:
    """A missing file yields the documented defaults without warnings."""
    loaded = store.read()

    assert loaded.exists is False
    assert loaded.warnings == []
    assert loaded.record.max_clients == DEFAULT_MAX_CLIENTS == 200
    assert loaded.record.bandwidth_mbps == DEFAULT_BANDWIDTH == 5.0


def test_save_writes_only_the_two_keys_by_default(store: SettingsStore) -> None:
    """A record without optional limits serialises to exactly two lines."""
    store.save(SettingsRecord(max_clients=700, bandwidth_mbps=12.5))

    assert store.path.read_text(encoding="utf-8") == "MAX_CLIENTS=700\nBANDWIDTH=12.5\n"
    assert oct(store.path.stat().st_mode & 0o777) == "0o644"


def test_save_and_load_optional_limits(store: SettingsStore) -> None:
    """Optional limits round-trip when set."""
    record = SettingsRecord(
        max_clients=50,
        bandwidth_mbps=-1,
        cpu_limit=0.5,
        memory_limit=parse_memory_limit("512m"),
    )
    store.save(record)

    text = store.path.read_text(encoding="utf-8")
    assert "BANDWIDTH=-1\n" in text
    assert "CPU_LIMIT=0.5\n" in text
    assert f"MEMORY_LIMIT={512 * 1024**2}\n" in text
    assert store.load() == record
    assert store.load().bandwidth_label() == "unlimited"


def test_absent_keys_default_at_load_time(store: SettingsStore) -> None:
    """Missing keys fall back to 200 clients and 5 Mbps."""
    store.path.parent.mkdir(parents=True)
    store.path.write_text("MAX_CLIENTS=321\n", encoding="utf-8")

    record = store.load()

    assert record.max_clients == 321
    assert record.bandwidth_mbps == 5.0


def test_invalid_file_value_substitutes_default_with_warning(store: SettingsStore) -> None:
    """A corrupt value never yields a partially invalid record."""
    store.path.parent.mkdir(parents=True)
    store.path.write_text("MAX_CLIENTS=5000\nBANDWIDTH=abc\n", encoding="utf-8")

    loaded = store.read()

    assert loaded.record == SettingsRecord()
    assert len(loaded.warnings) == 2
    assert "MAX_CLIENTS" in loaded.warnings[0]


def test_parse_key_values_accepts_shell_syntax() -> None:
    """Comments, ``export`` prefixes and quotes are tolerated."""
    values = parse_key_values(
        "# managed by conduitctl\n"
        "export MAX_CLIENTS=\"400\"\n"
        "BANDWIDTH='10'\n"
        "\n"
        "garbage line\n"
    )

    assert values == {"MAX_CLIENTS": "400", "BANDWIDTH": "10"}


@pytest.mark.parametrize("raw", ["0", "1001", "-5", "abc", "12.5", "1e3"])
def test_merge_rejects_invalid_max_clients(raw: str) -> None:
    """Out-of-range or non-numeric input keeps the current value and warns."""
    current = SettingsRecord(max_clients=250, bandwidth_mbps=8)

    update = merge_settings(current, max_clients=raw)

    assert update.record == current
    assert update.changed is False
    assert len(update.warnings) == 1
    assert "Keeping current value: 250" in update.warnings[0]


@pytest.mark.parametrize("raw", ["0", "0.5", "40.1", "fast", "-2"])
def test_merge_rejects_invalid_bandwidth(raw: str) -> None:
    """Bandwidth outside 1-40 (other than -1) is rejected."""
    current = SettingsRecord()

    update = merge_settings(current, bandwidth=raw)

    assert update.record.bandwidth_mbps == current.bandwidth_mbps
    assert update.warnings


def test_merge_applies_valid_fields_independently() -> None:
    """One invalid field does not block the valid ones."""
    current = SettingsRecord()

    update = merge_settings(current, max_clients="900", bandwidth="nope", cpu_limit="2")

    assert update.record.max_clients == 900
    assert update.record.bandwidth_mbps == current.bandwidth_mbps
    assert update.record.cpu_limit == 2.0
    assert update.changed is True
    assert len(update.warnings) == 1


def test_merge_ignores_blank_input() -> None:
    """Blank prompt answers keep the current values silently."""
    current = SettingsRecord(max_clients=10)

    update = merge_settings(current, max_clients="  ", bandwidth=None)

    assert update.record == current
    assert update.warnings == []


@pytest.mark.parametrize("raw", ["-1", "unlimited", "UNLIMITED"])
def test_parse_bandwidth_unlimited(raw: str) -> None:
    """The unlimited sentinel is accepted in several spellings."""
    assert parse_bandwidth(raw) == -1.0


def test_record_rejects_out_of_range_fields() -> None:
    """Records cannot be constructed in an invalid state."""
    with pytest.raises(ConfigInvalid):
        SettingsRecord(max_clients=0)
    with pytest.raises(ConfigInvalid):
        SettingsRecord(bandwidth_mbps=41)
    with pytest.raises(ConfigInvalid):
        SettingsRecord(memory_limit=1024)


def test_record_flags() -> None:
    """Workload flags and the memory label reflect the record."""
    record = SettingsRecord(max_clients=400, bandwidth_mbps=7.5, memory_limit=1024**3)

    assert record.workload_args() == ["--max-clients", "400", "--bandwidth", "7.5"]
    assert format_memory(record.memory_limit) == "1g"


def test_save_failure_keeps_previous_file(
    monkeypatch: pytest.MonkeyPatch,
    store: SettingsStore,
) -> None:
    """A failed atomic replace raises and leaves the prior settings intact."""
    store.save(SettingsRecord(max_clients=123))

    def fail_replace(src: object, dst: object) -> None:
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(os, "replace", fail_replace)

    with pytest.raises(PersistenceFailure, match="No space left"):
        store.save(SettingsRecord(max_clients=999))

    monkeypatch.undo()
    assert store.load().max_clients == 123
    assert sorted(path.name for path in store.path.parent.iterdir()) == ["settings.conf"]


def test_chmod_failure_leaves_previous_file_in_place(
    monkeypatch: pytest.MonkeyPatch,
    store: SettingsStore,
) -> None:
    """A permission fix-up failure happens before the new file is published."""
    store.save(SettingsRecord(max_clients=123))

    def fail_chmod(path: object, mode: int) -> None:
        raise PermissionError(1, "Operation not permitted")

    monkeypatch.setattr(os, "chmod", fail_chmod)

    with pytest.raises(PersistenceFailure, match="not permitted"):
        store.save(SettingsRecord(max_clients=999))

    monkeypatch.undo()
    assert store.load().max_clients == 123
    assert sorted(path.name for path in store.path.parent.iterdir()) == ["settings.conf"]


def test_save_failure_when_directory_unwritable(tmp_path: Path) -> None:
    """Directory creation errors surface as persistence failures."""
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    store = SettingsStore(blocker / "settings.conf")

    with pytest.raises(PersistenceFailure):
        store.save(SettingsRecord())


def test_purge_removes_file_and_empty_directory(store: SettingsStore) -> None:
    """Purging deletes the file and the now-empty install directory."""
    store.save(SettingsRecord())

    assert store.purge() is True
    assert not store.path.exists()
    assert not store.path.parent.exists()
    assert store.purge() is False


@pytest.mark.parametrize(
    ("ram_gb", "expected"),
    [(1, 200), (2, 400), (3, 400), (4, 700), (7, 700), (8, 1000), (64, 1000)],
)
def test_recommended_max_clients(ram_gb: int, expected: int) -> None:
    """Recommendations scale with host memory."""
    assert recommended_max_clients(ram_gb) == expected


def test_detect_ram_gb_reads_meminfo(tmp_path: Path) -> None:
    """Total memory is read from ``/proc/meminfo`` in whole GiB."""
    meminfo = tmp_path / "meminfo"
    meminfo.write_text("MemTotal:        8167236 kB\nMemFree: 1 kB\n", encoding="utf-8")

    assert detect_ram_gb(meminfo) == 7
    assert detect_ram_gb(tmp_path / "missing") == 1
