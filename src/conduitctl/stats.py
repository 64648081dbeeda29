"""Telemetry extraction from the workload's free-form log output.

The proxy periodically writes a status line such as::

    [STATS] Connecting: 3 | Connected: 42 | Up: 1.2MB/s | Down: 3.4MB/s | Uptime: 2h5m

Everything else in the log is treated as opaque text. :func:`extract` is pure:
given the same lines it always returns the same :class:`TelemetrySample`.
"""
from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum

TELEMETRY_TAG = "[STATS]"
FIELD_DELIMITER = "|"

NOISE_MARKERS = ("context deadline exceeded", "port mapping: closed")

LABEL_CONNECTING = "Connecting"
LABEL_CONNECTED = "Connected"
LABEL_UPLOAD = "Up"
LABEL_DOWNLOAD = "Down"
LABEL_UPTIME = "Uptime"

_LABELS = (LABEL_CONNECTING, LABEL_CONNECTED, LABEL_UPLOAD, LABEL_DOWNLOAD, LABEL_UPTIME)
_LEADING_DIGITS = re.compile(r"\d+", re.ASCII)


class Completeness(str, Enum):
    """How much of a telemetry sample could be recovered."""

    NO_DATA = "no_data"
    PARTIAL = "partial"
    FULL = "full"


@dataclass(frozen=True)
class TelemetrySample:
    """Structured view of the newest telemetry line."""

    connecting: int = 0
    connected: int = 0
    upload_rate: str = ""
    download_rate: str = ""
    uptime: str = ""
    completeness: Completeness = Completeness.NO_DATA

    @property
    def degraded(self) -> bool:
        """Return ``True`` unless every field was recovered."""
        return self.completeness is not Completeness.FULL

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "connecting": self.connecting,
            "connected": self.connected,
            "upload_rate": self.upload_rate,
            "download_rate": self.download_rate,
            "uptime": self.uptime,
            "completeness": self.completeness.value,
        }


NO_DATA = TelemetrySample()


def extract(lines: Sequence[str]) -> TelemetrySample:
    """Return telemetry from the newest tagged line in *lines* (oldest first)."""
    line = latest_tagged(lines)
    if line is None:
        return NO_DATA
    fields = _split_fields(line.split(TELEMETRY_TAG, 1)[1])

    located = 0
    counts: dict[str, int] = {}
    for label in (LABEL_CONNECTING, LABEL_CONNECTED):
        count = _leading_int(fields.get(label))
        if count is not None:
            counts[label] = count
            located += 1
    texts: dict[str, str] = {}
    for label in (LABEL_UPLOAD, LABEL_DOWNLOAD, LABEL_UPTIME):
        value = fields.get(label)
        if value:
            texts[label] = value
            located += 1

    return TelemetrySample(
        connecting=counts.get(LABEL_CONNECTING, 0),
        connected=counts.get(LABEL_CONNECTED, 0),
        upload_rate=texts.get(LABEL_UPLOAD, ""),
        download_rate=texts.get(LABEL_DOWNLOAD, ""),
        uptime=texts.get(LABEL_UPTIME, ""),
        completeness=Completeness.FULL if located == len(_LABELS) else Completeness.PARTIAL,
    )


def latest_tagged(lines: Sequence[str]) -> str | None:
    """Return the newest line carrying the telemetry tag, if any."""
    for line in reversed(lines):
        if TELEMETRY_TAG in line:
            return line
    return None


def strip_to_tag(line: str) -> str | None:
    """Return *line* from the telemetry tag onwards, or ``None`` if untagged."""
    index = line.find(TELEMETRY_TAG)
    if index < 0:
        return None
    return line[index:].rstrip()


def is_noise(line: str) -> bool:
    """Return ``True`` for recurring, harmless transport chatter."""
    return any(marker in line for marker in NOISE_MARKERS)


def filter_noise(lines: Iterable[str]) -> list[str]:
    """Drop noise lines from *lines*."""
    return [line for line in lines if not is_noise(line)]


def _split_fields(text: str) -> dict[str, str]:
    fields: dict[str, str] = {}
    for segment in text.split(FIELD_DELIMITER):
        label, sep, value = segment.partition(":")
        label = label.strip()
        if not sep or label not in _LABELS or label in fields:
            continue
        fields[label] = value.strip()
    return fields


def _leading_int(value: str | None) -> int | None:
    match = _LEADING_DIGITS.match(value or "")
    return int(match.group()) if match else None


__all__ = [
    "NO_DATA",
    "TELEMETRY_TAG",
    "Completeness",
    "TelemetrySample",
    "extract",
    "filter_noise",
    "is_noise",
    "latest_tagged",
    "strip_to_tag",
]
