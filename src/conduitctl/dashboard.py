"""Live, read-only views of the workload: the dashboard and log follow sessions.

Both views are single-threaded loops. Each iteration renders once and then
blocks on :meth:`CancellationToken.wait`, which is at the same time the refresh
delay and the only point where a keypress or a termination signal ends the
loop. The terminal (cbreak mode, alternate screen) is acquired before the first
frame and released exactly once on every exit path.
"""
from __future__ import annotations

import logging
import os
import select
import signal
import termios
import time
import tty
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import IO, Any, Protocol

from rich.console import Console, Group, RenderableType
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .controller import ResourceUsage, WorkloadController, WorkloadState
from .providers.service import AutostartStatus
from .settings import SettingsRecord, format_memory
from .stats import Completeness, TelemetrySample, extract, is_noise, strip_to_tag

LOGGER = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL = 10.0
DEFAULT_LOG_TAIL = 1000


class ExitReason(str, Enum):
    """Why a live session ended."""

    KEYPRESS = "keypress"
    SIGNAL = "signal"
    CANCELLED = "cancelled"
    STREAM_END = "stream_end"


class CancellationToken:
    """Cooperative cancellation flag that can be waited on with a timeout.

    ``cancel`` only writes one byte to a non-blocking self-pipe, so it is safe to
    call from a signal handler. :meth:`wait` selects on that pipe together with
    any extra descriptors the caller watches.
    """

    def __init__(self) -> None:
        """Create the wake-up pipe."""
        self._read_fd, self._write_fd = os.pipe()
        os.set_blocking(self._read_fd, False)
        os.set_blocking(self._write_fd, False)
        self._reason: ExitReason | None = None
        self._closed = False

    @property
    def cancelled(self) -> bool:
        """Return ``True`` once :meth:`cancel` has been called."""
        return self._reason is not None

    @property
    def reason(self) -> ExitReason | None:
        """Return the first cancellation reason."""
        return self._reason

    def cancel(self, reason: ExitReason = ExitReason.CANCELLED) -> None:
        """Request loop exit; later calls keep the first reason."""
        if self._reason is None:
            self._reason = reason
        if self._closed:
            return
        try:
            os.write(self._write_fd, b"\0")
        except BlockingIOError:
            pass

    def wait(self, timeout: float | None, watch: Sequence[Any] = ()) -> list[Any]:
        """Block until cancelled, a watched object is readable, or *timeout*.

        Return the watched objects that became readable (never the token itself).
        """
        if self.cancelled:
            return []
        readable, _, _ = select.select([self._read_fd, *watch], [], [], timeout)
        return [item for item in readable if item != self._read_fd]

    def close(self) -> None:
        """Release the pipe descriptors."""
        if self._closed:
            return
        self._closed = True
        os.close(self._read_fd)
        os.close(self._write_fd)

    def __enter__(self) -> CancellationToken:
        """Return the token for use in a ``with`` block."""
        return self

    def __exit__(self, *exc_info: object) -> None:
        """Close the pipe."""
        self.close()


@contextmanager
def signal_handlers(
    token: CancellationToken,
    signals: Sequence[signal.Signals] = (signal.SIGINT, signal.SIGTERM),
) -> Iterator[CancellationToken]:
    """Route *signals* to ``token.cancel`` and restore prior handlers on exit."""

    def _handler(signum: int, frame: object) -> None:
        token.cancel(ExitReason.SIGNAL)

    previous: dict[signal.Signals, Any] = {}
    for signum in signals:
        try:
            previous[signum] = signal.signal(signum, _handler)
        except ValueError:
            LOGGER.debug("cannot install %s handler outside the main thread", signum.name)
    try:
        yield token
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


class KeySource:
    """Keyboard input read from a raw descriptor once ``select`` reports data."""

    def __init__(self, stream: IO[str]) -> None:
        """Read keys from *stream* (normally ``sys.stdin``)."""
        self._stream = stream

    def fileno(self) -> int:
        """Return the descriptor to watch."""
        return self._stream.fileno()

    def read(self) -> str:
        """Consume pending keystrokes and return them."""
        return os.read(self.fileno(), 64).decode("utf-8", errors="replace")


class Terminal(Protocol):
    """Output surface used by live sessions."""

    def acquire(self) -> None: ...

    def render(self, frame: RenderableType) -> None: ...

    def release(self) -> None: ...


class TerminalMode:
    """Scoped acquisition of the operator's terminal.

    On a TTY, stdin is switched to cbreak mode and frames are drawn in place on
    Rich's alternate screen. Without a TTY each frame is printed in sequence.
    :meth:`release` restores whatever was changed and is safe to call twice.
    """

    def __init__(
        self,
        console: Console,
        stream: IO[str] | None = None,
        *,
        screen: bool = True,
    ) -> None:
        """Bind the session to *console*; *stream* supplies keystrokes when a TTY."""
        self.console = console
        self.stream = stream
        self.screen = screen
        self._saved_attrs: list[Any] | None = None
        self._live: Live | None = None
        self._active = False

    @property
    def interactive(self) -> bool:
        """Return ``True`` when keystrokes can be read from the stream."""
        return self.stream is not None and self.stream.isatty()

    def acquire(self) -> None:
        if self._active:
            return
        self._active = True
        if self.stream is not None and self.stream.isatty():
            fd = self.stream.fileno()
            self._saved_attrs = termios.tcgetattr(fd)
            tty.setcbreak(fd)
        if self.console.is_terminal:
            self._live = Live(
                console=self.console,
                screen=self.screen,
                auto_refresh=False,
                transient=True,
            )
            self._live.start()

    def render(self, frame: RenderableType) -> None:
        if self._live is not None:
            self._live.update(frame, refresh=True)
        else:
            self.console.print(frame)

    def release(self) -> None:
        if not self._active:
            return
        self._active = False
        live, self._live = self._live, None
        saved, self._saved_attrs = self._saved_attrs, None
        try:
            if live is not None:
                live.stop()
        finally:
            if saved is not None and self.stream is not None:
                termios.tcsetattr(self.stream.fileno(), termios.TCSADRAIN, saved)

    def __enter__(self) -> TerminalMode:
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


@dataclass(slots=True)
class Snapshot:
    """Everything shown in one dashboard frame."""

    state: WorkloadState
    usage: ResourceUsage
    telemetry: TelemetrySample
    taken_at: float


def collect_snapshot(controller: WorkloadController, log_tail: int) -> Snapshot:
    """Query the controller and the telemetry extractor once."""
    state = controller.status()
    usage = controller.resource_usage()
    lines = controller.log_tail(log_tail) if state is WorkloadState.RUNNING else []
    telemetry = extract(lines)
    return Snapshot(state=state, usage=usage, telemetry=telemetry, taken_at=time.time())


def render_status(
    snapshot: Snapshot,
    settings: SettingsRecord,
    *,
    autostart: AutostartStatus | None = None,
    title: str = "Conduit Status",
    footer: str | None = None,
) -> RenderableType:
    """Build the fixed-layout status table for *snapshot*."""
    table = Table(show_header=False, expand=True, box=None, pad_edge=False)
    table.add_column("Field", style="bold", no_wrap=True, width=18)
    table.add_column("Value")

    running = snapshot.state is WorkloadState.RUNNING
    state_label = "Running" if running else snapshot.state.value.capitalize()
    table.add_row("Status", Text(state_label, style="green" if running else "red"))

    telemetry = snapshot.telemetry
    if running and telemetry.completeness is not Completeness.NO_DATA:
        table.add_row("Uptime", telemetry.uptime or "-")
        table.add_row(
            "Clients",
            f"{telemetry.connected} connected | {telemetry.connecting} connecting",
        )
        table.add_row(
            "Traffic",
            f"Up: {telemetry.upload_rate or '-'} | Down: {telemetry.download_rate or '-'}",
        )
        if telemetry.completeness is Completeness.PARTIAL:
            table.add_row("", Text("Some telemetry fields missing", style="yellow"))
    elif running:
        table.add_row("Clients", Text("Waiting for first stats line...", style="yellow"))
    usage = snapshot.usage
    table.add_row(
        "Resources",
        f"CPU: {usage.cpu_percent} | RAM: {usage.memory_usage} ({usage.memory_percent})",
    )

    table.add_row("Max clients", str(settings.max_clients))
    table.add_row("Bandwidth", settings.bandwidth_label())
    if settings.cpu_limit is not None or settings.memory_limit is not None:
        cpu = f"{settings.cpu_limit:g} cores" if settings.cpu_limit is not None else "none"
        table.add_row("Limits", f"CPU: {cpu} | Memory: {format_memory(settings.memory_limit)}")
    if autostart is not None:
        if autostart.enabled:
            detail = f" ({autostart.detail})" if autostart.detail else ""
            table.add_row("Auto-start", f"Enabled via {autostart.kind.label}{detail}")
        else:
            table.add_row("Auto-start", Text(autostart.detail or "Not configured", style="dim"))

    renderables: list[RenderableType] = [table]
    if footer:
        renderables.append(Text(footer, style="dim"))
    return Panel(Group(*renderables), title=title, expand=True)


class DashboardSession:
    """Refresh a status frame until a keypress or a signal ends the session."""

    def __init__(
        self,
        controller: WorkloadController,
        settings: SettingsRecord,
        *,
        terminal: Terminal,
        token: CancellationToken,
        keys: KeySource | None = None,
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL,
        log_tail: int = DEFAULT_LOG_TAIL,
        autostart: AutostartStatus | None = None,
    ) -> None:
        self.controller = controller
        self.settings = settings
        self.terminal = terminal
        self.token = token
        self.keys = keys
        self.refresh_interval = refresh_interval
        self.log_tail = log_tail
        self.autostart = autostart

    def frame(self) -> RenderableType:
        """Build one frame from fresh controller queries."""
        snapshot = collect_snapshot(self.controller, self.log_tail)
        stamp = time.strftime("%H:%M:%S", time.localtime(snapshot.taken_at))
        prompt = "Press any key to return" if self.keys is not None else "Ctrl+C to stop"
        return render_status(
            snapshot,
            self.settings,
            autostart=self.autostart,
            title=f"CONDUIT LIVE DASHBOARD  {stamp}",
            footer=f"Refreshes every {self.refresh_interval:g}s. {prompt}.",
        )

    def run(self) -> ExitReason:
        """Run until cancelled; always release the terminal before returning."""
        watch = [self.keys] if self.keys is not None else []
        try:
            self.terminal.acquire()
            while True:
                self.terminal.render(self.frame())
                ready = self.token.wait(self.refresh_interval, watch=watch)
                if self.token.cancelled:
                    return self.token.reason or ExitReason.CANCELLED
                if ready and self.keys is not None:
                    self.keys.read()
                    return ExitReason.KEYPRESS
        finally:
            self.terminal.release()


LineFilter = Callable[[str], "str | None"]


def telemetry_filter(line: str) -> str | None:
    """Keep telemetry lines, trimmed to the tag."""
    return strip_to_tag(line)


def noise_filter(line: str) -> str | None:
    """Keep every line except known transport noise."""
    return None if is_noise(line) else line


class FollowSession:
    """Print a followed log stream line by line until cancelled."""

    def __init__(
        self,
        controller: WorkloadController,
        console: Console,
        token: CancellationToken,
        *,
        tail: int,
        line_filter: LineFilter = noise_filter,
        keys: KeySource | None = None,
    ) -> None:
        self.controller = controller
        self.console = console
        self.token = token
        self.tail = tail
        self.line_filter = line_filter
        self.keys = keys

    def run(self) -> ExitReason:
        """Stream until a signal, a keypress, or the end of the stream."""
        with self.controller.follow_logs(self.tail) as follower:
            watch: list[Any] = [follower]
            if self.keys is not None:
                watch.append(self.keys)
            while True:
                ready = self.token.wait(None, watch=watch)
                if self.token.cancelled:
                    return self.token.reason or ExitReason.CANCELLED
                if self.keys is not None and self.keys in ready:
                    self.keys.read()
                    return ExitReason.KEYPRESS
                if follower in ready:
                    for line in follower.read_lines():
                        shown = self.line_filter(line)
                        if shown:
                            self.console.print(shown, markup=False, highlight=False)
                    if follower.exhausted:
                        return ExitReason.STREAM_END


__all__ = [
    "DEFAULT_LOG_TAIL",
    "DEFAULT_REFRESH_INTERVAL",
    "CancellationToken",
    "DashboardSession",
    "ExitReason",
    "FollowSession",
    "KeySource",
    "Snapshot",
    "TerminalMode",
    "collect_snapshot",
    "noise_filter",
    "render_status",
    "signal_handlers",
    "telemetry_filter",
]
