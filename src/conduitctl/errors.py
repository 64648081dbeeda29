"""Error taxonomy shared by the conduitctl providers and controller.

Every wrapper around an external call raises one of these classes so command
handlers can decide deliberately whether to recover or propagate:

* :class:`ConfigInvalid` and :class:`NotFound` are recoverable and surface as
  warnings.
* :class:`EngineUnavailable`, :class:`EngineOperationFailed` and
  :class:`PersistenceFailure` propagate to the command boundary and set the exit
  code.
"""
from __future__ import annotations

from collections.abc import Sequence

ENGINE_REMEDIATION = (
    "Start Docker with:",
    "  sudo systemctl start docker       # For systemd",
    "  sudo /etc/init.d/docker start     # For SysVinit",
    "  sudo rc-service docker start      # For OpenRC",
)

ENGINE_INSTALL_REMEDIATION = (
    "Docker is required to run Conduit. Install it with:",
    "  curl -fsSL https://get.docker.com | sudo sh",
)

ENGINE_PERMISSION_REMEDIATION = (
    "Run conduitctl with sudo, or add your user to the docker group:",
    "  sudo usermod -aG docker $USER",
)


class ConduitError(RuntimeError):
    """Base class for conduitctl runtime failures."""


class ConfigInvalid(ConduitError):
    """Raised when a settings value is non-numeric or out of range."""

    def __init__(self, field: str, value: object, message: str) -> None:
        """Record the offending *field* and *value* alongside *message*."""
        super().__init__(message)
        self.field = field
        self.value = value


class EngineUnavailable(ConduitError):
    """Raised when the docker binary is missing or the daemon is unreachable."""

    def __init__(self, message: str, remediation: Sequence[str] = ENGINE_REMEDIATION) -> None:
        """Attach remediation guidance lines to the error."""
        super().__init__(message)
        self.remediation = tuple(remediation)


class EngineOperationFailed(ConduitError):
    """Raised when an engine call fails, times out or never becomes ready."""

    def __init__(self, message: str, output: Sequence[str] = ()) -> None:
        """Keep the tail of the engine's own diagnostic output."""
        super().__init__(message)
        self.output = tuple(output)

    def __str__(self) -> str:
        """Render the message followed by the captured output tail."""
        base = super().__str__()
        if not self.output:
            return base
        return base + "\n" + "\n".join(self.output)


class NotFound(ConduitError):
    """Raised when an operation requires an instance that does not exist."""


class PersistenceFailure(ConduitError):
    """Raised when the settings file cannot be written."""


def tail_lines(text: str | None, limit: int = 10) -> list[str]:
    """Return the last *limit* non-empty lines of *text*."""
    if not text:
        return []
    lines = [line for line in text.splitlines() if line.strip()]
    return lines[-limit:]


__all__ = [
    "ENGINE_INSTALL_REMEDIATION",
    "ENGINE_PERMISSION_REMEDIATION",
    "ENGINE_REMEDIATION",
    "ConduitError",
    "ConfigInvalid",
    "EngineOperationFailed",
    "EngineUnavailable",
    "NotFound",
    "PersistenceFailure",
    "tail_lines",
]
