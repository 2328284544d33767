"""
dashboard.py

Terminal dashboard for run and ui modes, drawn with rich. The run loop calls
draw() once per tick with a fresh state snapshot.
"""

from typing import List, Optional

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.progress_bar import ProgressBar
from rich.table import Table
from rich.text import Text

from flightctl.manager import Target, TargetStatus
from flightctl.state import RunSnapshot, WorkerStatus

CONSOLE = Console()

STATUS_STYLES = {
    WorkerStatus.PENDING: "dim",
    WorkerStatus.RUNNING: "cyan",
    WorkerStatus.COMPLETE: "green",
    WorkerStatus.FAILED: "bold red",
}


def progress_label(ratio: float) -> str:
    return f"{ratio * 100.0:.2f}%"


def render_progress(snapshot: RunSnapshot) -> Panel:
    t = Table(expand=True, box=None, padding=(0, 1))
    t.add_column("Vehicle", no_wrap=True)
    t.add_column("Endpoint", style="blue", no_wrap=True)
    t.add_column("Progress", ratio=1)
    t.add_column("", justify="right", no_wrap=True)
    t.add_column("Status", no_wrap=True)

    for worker, ratio, status in zip(snapshot.workers, snapshot.progress, snapshot.statuses):
        t.add_row(
            f"[b]Vehicle {worker.id} progress:[/b]",
            worker.endpoint,
            ProgressBar(total=1.0, completed=ratio, complete_style="magenta"),
            progress_label(ratio),
            Text(status.value, style=STATUS_STYLES[status]),
        )
    return Panel(t, title="Overview", padding=(1, 2))


def render_logs(snapshot: RunSnapshot, lines: int = 10) -> Panel:
    """Last `lines` log entries, interleaved across workers"""
    text = Text()
    for worker_id, message in snapshot.logs[-lines:]:
        text.append(f"[{worker_id:<2}]LOG  ", style="blue")
        text.append(f"{message}\n")
    return Panel(text, title="Logs")


def render_run(snapshot: RunSnapshot, log_lines: int = 10) -> Group:
    return Group(render_progress(snapshot), render_logs(snapshot, log_lines))


def render_targets(targets: List[Target]) -> Panel:
    """Connection manager targets, for ui mode"""
    t = Table(expand=True)
    t.add_column("ID", justify="right")
    t.add_column("Endpoint", style="blue")
    t.add_column("Refs", justify="right")
    t.add_column("Status")

    for target in targets:
        style = "green" if target.status == TargetStatus.CONNECTED else "bold red"
        t.add_row(
            str(target.id),
            target.endpoint,
            str(target.connection.ref_count),
            Text(target.status.value, style=style),
        )
    if not targets:
        t.add_row("-", "no targets connected", "-", "-")
    return Panel(t, title="Connections", padding=(1, 2))


class Dashboard:
    """Live run dashboard; use as a context manager around the run loop"""

    def __init__(self, console: Optional[Console] = None, log_lines: int = 10):
        self.console = console or CONSOLE
        self.log_lines = log_lines
        self._live: Optional[Live] = None

    def __enter__(self):
        self._live = Live(console=self.console, auto_refresh=False, transient=False)
        self._live.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self._live.stop()
        self._live = None

    def draw(self, snapshot: RunSnapshot):
        renderable = render_run(snapshot, self.log_lines)
        if self._live is None:
            self.console.print(renderable)
        else:
            self._live.update(renderable, refresh=True)
