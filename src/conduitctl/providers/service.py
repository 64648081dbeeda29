"""Auto-start registration across host init systems.

The host init system is detected once (:func:`detect_init_kind`) and mapped to a
single backend class. Every backend renders its own registration artifact from a
fixed template and knows how to register and unregister it:

========  =========================================  =================================
Kind      Artifact                                   Registration
========  =========================================  =================================
systemd   ``/etc/systemd/system/conduit.service``    ``systemctl enable``
openrc    ``/etc/init.d/conduit``                    ``rc-update add conduit default``
sysvinit  ``/etc/init.d/conduit``                    ``update-rc.d`` / ``chkconfig``
none      nothing                                    engine restart policy
========  =========================================  =================================

``install`` and ``remove`` are idempotent: repeating them reports
``changed=False`` instead of failing.
"""
from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from ..config import ServiceConfig
from ..errors import ConduitError
from ..templates import TemplateEngine, TemplateError

LOGGER = logging.getLogger(__name__)

COMMAND_TIMEOUT = 60.0


class ServiceError(ConduitError):
    """Raised when registering or unregistering the auto-start unit fails."""


class InitKind(str, Enum):
    """Host auto-start mechanism."""

    SYSTEMD = "systemd"
    OPENRC = "openrc"
    SYSVINIT = "sysvinit"
    NONE = "none"

    @property
    def label(self) -> str:
        """Return the display name of the init system."""
        return {
            InitKind.SYSTEMD: "systemd",
            InitKind.OPENRC: "OpenRC",
            InitKind.SYSVINIT: "SysVinit",
            InitKind.NONE: "none",
        }[self]


@dataclass(frozen=True)
class UnitSpec:
    """Start/stop invocation of the workload, shared by every artifact."""

    service_name: str = "conduit"
    container_name: str = "conduit"
    docker_bin: str = "docker"
    docker_path: str = "/usr/bin/docker"
    description: str = "Psiphon Conduit Service"
    display_name: str = "Conduit"

    def command(self, action: str, *, absolute: bool = False) -> str:
        """Return ``docker <action> <container>`` for the init script."""
        binary = self.docker_path if absolute else self.docker_bin
        return f"{binary} {action} {self.container_name}"

    def context(self) -> dict[str, object]:
        """Return the template context for every artifact."""
        return {
            "service_name": self.service_name,
            "description": self.description,
            "display_name": self.display_name,
            "exec_start": self.command("start", absolute=True),
            "exec_stop": self.command("stop", absolute=True),
            "start_command": self.command("start"),
            "stop_command": self.command("stop"),
            "restart_command": self.command("restart"),
            "status_command": f"{self.docker_bin} ps | grep -q {self.container_name}",
        }


@dataclass(slots=True)
class ServiceResult:
    """Outcome of an install/remove request."""

    kind: InitKind
    changed: bool
    managed: bool = True
    registered: bool = True
    detail: str = ""
    path: Path | None = None


@dataclass(slots=True)
class AutostartStatus:
    """Auto-start state shown on the status screen."""

    kind: InitKind
    enabled: bool
    detail: str = ""


def detect_init_kind(
    config: ServiceConfig,
    *,
    which: Callable[[str], str | None] = shutil.which,
) -> InitKind:
    """Inspect the host and return the init system to register with."""
    if which(config.systemctl_bin) and config.systemd_runtime_dir.is_dir():
        return InitKind.SYSTEMD
    if which(config.rc_update_bin):
        return InitKind.OPENRC
    if config.init_dir.is_dir():
        return InitKind.SYSVINIT
    return InitKind.NONE


@dataclass(slots=True)
class _Backend:
    """Shared plumbing for init-system backends."""

    config: ServiceConfig
    templates: TemplateEngine
    spec: UnitSpec
    which: Callable[[str], str | None] = shutil.which

    kind = InitKind.NONE

    def install(self) -> ServiceResult:
        raise NotImplementedError

    def remove(self) -> ServiceResult:
        raise NotImplementedError

    def describe(self) -> AutostartStatus:
        raise NotImplementedError

    def _render(self, template: str, path: Path, mode: int) -> bool:
        try:
            return self.templates.render_to_path(template, path, self.spec.context(), mode=mode)
        except TemplateError as exc:
            raise ServiceError(str(exc)) from exc

    def _unlink(self, path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise ServiceError(f"Failed to remove {path}: {exc}") from exc
        return True

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        error_prefix = " ".join(args)
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
                timeout=COMMAND_TIMEOUT,
            )
        except FileNotFoundError as exc:
            if not check:
                LOGGER.debug("%s skipped: %s", error_prefix, exc)
                return subprocess.CompletedProcess(list(args), returncode=127, stdout="", stderr="")
            raise ServiceError(f"{args[0]} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise ServiceError(f"{error_prefix} timed out after {exc.timeout:g}s") from exc
        if check and result.returncode != 0:
            stdout = result.stdout or ""
            stderr = result.stderr or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise ServiceError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


@dataclass(slots=True)
class SystemdBackend(_Backend):
    """Oneshot systemd unit wrapping ``docker start``/``docker stop``."""

    kind = InitKind.SYSTEMD

    @property
    def unit_name(self) -> str:
        return f"{self.spec.service_name}.service"

    @property
    def unit_path(self) -> Path:
        return self.config.systemd_dir / self.unit_name

    def install(self) -> ServiceResult:
        changed = self._render("systemd/service.j2", self.unit_path, 0o644)
        if changed:
            self._systemctl("daemon-reload")
        if not changed and self._is_enabled():
            return ServiceResult(
                kind=self.kind,
                changed=False,
                detail=f"{self.unit_name} already enabled",
                path=self.unit_path,
            )
        self._systemctl("enable", self.unit_name)
        started = self._systemctl("start", self.unit_name, check=False)
        detail = f"{self.unit_name} created and enabled"
        if started.returncode != 0:
            detail += " (start deferred to next boot)"
        return ServiceResult(kind=self.kind, changed=True, detail=detail, path=self.unit_path)

    def remove(self) -> ServiceResult:
        existed = self.unit_path.exists()
        if existed:
            self._systemctl("stop", self.unit_name, check=False)
            self._systemctl("disable", self.unit_name, check=False)
        removed = self._unlink(self.unit_path)
        if removed:
            self._systemctl("daemon-reload", check=False)
        return ServiceResult(kind=self.kind, changed=removed, path=self.unit_path)

    def describe(self) -> AutostartStatus:
        if not self._is_enabled():
            return AutostartStatus(kind=self.kind, enabled=False, detail="Not configured")
        active = self._systemctl("is-active", self.unit_name, check=False)
        state = (active.stdout or "").strip() or "unknown"
        return AutostartStatus(kind=self.kind, enabled=True, detail=f"service {state}")

    def _is_enabled(self) -> bool:
        result = self._systemctl("is-enabled", self.unit_name, check=False)
        return (result.stdout or "").strip() == "enabled"

    def _systemctl(
        self,
        command: str,
        unit: str | None = None,
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args = [self.config.systemctl_bin, command]
        if unit is not None:
            args.append(unit)
        return self._run_command(args, check=check)


@dataclass(slots=True)
class OpenRCBackend(_Backend):
    """``openrc-run`` script added to the default runlevel."""

    kind = InitKind.OPENRC

    @property
    def script_path(self) -> Path:
        return self.config.init_dir / self.spec.service_name

    def install(self) -> ServiceResult:
        changed = self._render("openrc/init.j2", self.script_path, 0o755)
        if not changed and self._is_registered():
            return ServiceResult(
                kind=self.kind,
                changed=False,
                detail="already in default runlevel",
                path=self.script_path,
            )
        self._run_command(
            [self.config.rc_update_bin, "add", self.spec.service_name, "default"],
            check=False,
        )
        return ServiceResult(
            kind=self.kind,
            changed=True,
            detail="OpenRC service created and enabled",
            path=self.script_path,
        )

    def remove(self) -> ServiceResult:
        registered = self._is_registered()
        if registered or self.script_path.exists():
            self._run_command(
                [self.config.rc_update_bin, "del", self.spec.service_name, "default"],
                check=False,
            )
        removed = self._unlink(self.script_path)
        return ServiceResult(kind=self.kind, changed=removed or registered, path=self.script_path)

    def describe(self) -> AutostartStatus:
        if self._is_registered():
            return AutostartStatus(kind=self.kind, enabled=True)
        return AutostartStatus(kind=self.kind, enabled=False, detail="Not configured")

    def _is_registered(self) -> bool:
        return (self.config.openrc_runlevel_dir / self.spec.service_name).exists()


@dataclass(slots=True)
class SysVInitBackend(_Backend):
    """LSB init script registered with ``update-rc.d`` or ``chkconfig``."""

    kind = InitKind.SYSVINIT

    @property
    def script_path(self) -> Path:
        return self.config.init_dir / self.spec.service_name

    def install(self) -> ServiceResult:
        changed = self._render("sysvinit/init.j2", self.script_path, 0o755)
        if not changed and self._is_registered():
            return ServiceResult(
                kind=self.kind,
                changed=False,
                detail="init script already registered",
                path=self.script_path,
            )
        if not self._register():
            return ServiceResult(
                kind=self.kind,
                changed=changed,
                registered=False,
                detail="init script installed but not linked into any runlevel",
                path=self.script_path,
            )
        return ServiceResult(
            kind=self.kind,
            changed=True,
            detail="SysVinit service created and enabled",
            path=self.script_path,
        )

    def remove(self) -> ServiceResult:
        name = self.spec.service_name
        if self.script_path.exists():
            if self.which(self.config.update_rc_bin):
                self._run_command([self.config.update_rc_bin, "-f", name, "remove"], check=False)
            elif self.which(self.config.chkconfig_bin):
                self._run_command([self.config.chkconfig_bin, name, "off"], check=False)
        removed = self._unlink(self.script_path)
        return ServiceResult(kind=self.kind, changed=removed, path=self.script_path)

    def describe(self) -> AutostartStatus:
        if not self.script_path.exists():
            return AutostartStatus(kind=self.kind, enabled=False, detail="Not configured")
        if not self._is_registered():
            return AutostartStatus(
                kind=self.kind,
                enabled=False,
                detail="Init script not linked into runlevels",
            )
        return AutostartStatus(kind=self.kind, enabled=True)

    def _register(self) -> bool:
        """Link the script into the default runlevels; ``False`` if that did not happen."""
        name = self.spec.service_name
        if self.which(self.config.update_rc_bin):
            result = self._run_command([self.config.update_rc_bin, name, "defaults"], check=False)
        elif self.which(self.config.chkconfig_bin):
            result = self._run_command([self.config.chkconfig_bin, name, "on"], check=False)
        else:
            LOGGER.debug(
                "neither %s nor %s found", self.config.update_rc_bin, self.config.chkconfig_bin
            )
            return False
        return result.returncode == 0

    def _is_registered(self) -> bool:
        # Debian keeps rcN.d beside init.d; Red Hat nests both under rc.d.
        root = self.config.init_dir.parent
        name = self.spec.service_name
        patterns = (f"rc[2-5].d/S[0-9][0-9]{name}", f"rc.d/rc[2-5].d/S[0-9][0-9]{name}")
        return any(any(root.glob(pattern)) for pattern in patterns)


@dataclass(slots=True)
class NoInitBackend(_Backend):
    """No supported init system: rely on the engine restart policy."""

    kind = InitKind.NONE

    def install(self) -> ServiceResult:
        return ServiceResult(
            kind=self.kind,
            changed=False,
            managed=False,
            detail=(
                "Could not set up auto-start. Docker's restart policy (unless-stopped) "
                "restarts the container on reboot once Docker starts."
            ),
        )

    def remove(self) -> ServiceResult:
        return ServiceResult(kind=self.kind, changed=False, managed=False)

    def describe(self) -> AutostartStatus:
        return AutostartStatus(
            kind=self.kind,
            enabled=False,
            detail="Docker restart policy handles restarts",
        )


_BACKENDS: dict[InitKind, type[_Backend]] = {
    InitKind.SYSTEMD: SystemdBackend,
    InitKind.OPENRC: OpenRCBackend,
    InitKind.SYSVINIT: SysVInitBackend,
    InitKind.NONE: NoInitBackend,
}


class ServiceManager:
    """Register the workload with the init system detected at construction."""

    def __init__(
        self,
        config: ServiceConfig,
        templates: TemplateEngine,
        spec: UnitSpec,
        *,
        kind: InitKind | None = None,
        which: Callable[[str], str | None] = shutil.which,
    ) -> None:
        """Detect the init system once (unless *kind* is given) and pick its backend."""
        self._kind = kind if kind is not None else detect_init_kind(config, which=which)
        self._backend = _BACKENDS[self._kind](
            config=config,
            templates=templates,
            spec=spec,
            which=which,
        )

    @property
    def kind(self) -> InitKind:
        """Return the init system chosen for this process."""
        return self._kind

    def detect(self) -> InitKind:
        """Return the detected init system (fixed for the process lifetime)."""
        return self._kind

    def install(self) -> ServiceResult:
        """Register the auto-start unit; a repeated call is a no-op."""
        result = self._backend.install()
        LOGGER.debug("service install (%s): %s", self._kind.value, result.detail)
        return result

    def remove(self) -> ServiceResult:
        """Unregister the auto-start unit; succeeds when nothing is registered."""
        result = self._backend.remove()
        LOGGER.debug("service remove (%s): changed=%s", self._kind.value, result.changed)
        return result

    def describe(self) -> AutostartStatus:
        """Report whether auto-start is currently enabled."""
        return self._backend.describe()


__all__ = [
    "AutostartStatus",
    "InitKind",
    "NoInitBackend",
    "OpenRCBackend",
    "ServiceError",
    "ServiceManager",
    "ServiceResult",
    "SysVInitBackend",
    "SystemdBackend",
    "UnitSpec",
    "detect_init_kind",
]
