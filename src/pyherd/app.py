"""pyherd - Main Textual application."""

import logging
from enum import Enum

import psutil
from textual.app import App, ComposeResult
from textual.containers import Container
from textual.widgets import DataTable, Footer, Static

from pyherd.config import PyherdSettings, configure_logging, load_jobs
from pyherd.control import run_instruction
from pyherd.exceptions import PyherdError
from pyherd.process import ProcessHandle, ProcessTable
from pyherd.supervisor import Supervisor

logger = logging.getLogger(__name__)

# Failures of one launch or signal that must not take the UI loop down with them
RECOVERABLE_ERRORS = (PyherdError, OSError, psutil.Error)


class SortKey(Enum):
    """Sort keys for the process list."""

    CPU = "cpu"
    MEM = "mem"
    PID = "pid"
    UPTIME = "uptime"


def format_bytes(size: int) -> str:
    """Format bytes as human-readable string."""
    for unit in ["B", "K", "M", "G", "T"]:
        if size < 1024:
            return f"{size:5.1f}{unit}" if unit != "B" else f"{size:5d}{unit}"
        size = size / 1024
    return f"{size:.1f}P"


def format_uptime(seconds: float) -> str:
    """Format a duration as ``[N days, ]HH:MM:SS``."""
    seconds = max(0, int(seconds))
    days, seconds = divmod(seconds, 86400)
    hours, seconds = divmod(seconds, 3600)
    minutes, seconds = divmod(seconds, 60)
    clock = f"{hours:02d}:{minutes:02d}:{seconds:02d}"
    return f"{days} days, {clock}" if days > 0 else clock


class SupervisorStats(Static):
    """Header line summarising every job."""

    DEFAULT_CSS = """
    SupervisorStats {
        height: auto;
        padding: 0 1;
        background: $surface;
    }
    """

    def update_stats(self, supervisor: Supervisor) -> None:
        jobs = list(supervisor)
        running = sum(job.running_count for job in jobs)
        desired = sum(job.desired_count for job in jobs)
        dying = sum(job.terminating_count for job in jobs)
        self.update(f"Jobs: {len(jobs)}  Processes: {running}/{desired}  Terminating: {dying}")


class JobTable(Container):
    """Container for the job overview table."""

    DEFAULT_CSS = """
    JobTable {
        height: auto;
        max-height: 12;
        border: solid $primary;
    }
    """

    def compose(self) -> ComposeResult:
        yield DataTable(id="job-table")

    def on_mount(self) -> None:
        table = self.query_one("#job-table", DataTable)
        table.cursor_type = "row"
        table.add_column("ID", key="id", width=12)
        table.add_column("NAME", key="name", width=20)
        table.add_column("RUN", key="running", width=5)
        table.add_column("WANT", key="desired", width=5)
        table.add_column("DYING", key="dying", width=6)
        table.add_column("RANGE", key="range", width=8)

    def update_jobs(self, supervisor: Supervisor) -> None:
        """Add rows for new jobs and refresh the counts of known ones."""
        table = self.query_one("#job-table", DataTable)
        for job in supervisor:
            low, high = job.allowed_processes
            cells = {
                "id": job.id,
                "name": job.name[:20],
                "running": str(job.running_count),
                "desired": str(job.desired_count),
                "dying": str(job.terminating_count),
                "range": f"{low}-{high}",
            }
            if job.id in table.rows:
                for column, value in cells.items():
                    table.update_cell(job.id, column, value)
            else:
                table.add_row(*cells.values(), key=job.id)


class ProcessList(Container):
    """Container for the processes of the selected job."""

    DEFAULT_CSS = """
    ProcessList {
        height: 1fr;
        border: solid $primary;
    }
    """

    def __init__(self, *args, **kwargs) -> None:
        """Initialize ProcessList."""
        super().__init__(*args, **kwargs)
        self._current_slots: set[str] = set()
        self._sort_key: SortKey = SortKey.CPU
        self._sort_reverse: bool = True

    @property
    def sort_key(self) -> SortKey:
        """Get current sort key."""
        return self._sort_key

    def cycle_sort(self) -> SortKey:
        """Cycle to the next sort key and return it."""
        keys = list(SortKey)
        self._sort_key = keys[(keys.index(self._sort_key) + 1) % len(keys)]
        self._sort_reverse = self._sort_key is not SortKey.PID
        return self._sort_key

    def compose(self) -> ComposeResult:
        yield DataTable(id="process-table")

    def on_mount(self) -> None:
        table = self.query_one("#process-table", DataTable)
        table.cursor_type = "row"
        table.add_column("SLOT", key="slot", width=10)
        table.add_column("PID", key="pid", width=8)
        table.add_column("USER", key="user", width=10)
        table.add_column("CPU%", key="cpu", width=8)
        table.add_column("MEM%", key="mem", width=8)
        table.add_column("RES", key="rss", width=8)
        table.add_column("UPTIME", key="uptime", width=12)
        table.add_column("Command", key="command")

    def update_processes(self, processes: dict[str, ProcessHandle]) -> None:
        """
        Update the table with fresh samples keyed by slot.

        Existing rows are updated in place with update_cell.
        """
        table = self.query_one("#process-table", DataTable)
        new_slots = set(processes)

        for slot in self._current_slots - new_slots:
            table.remove_row(slot)

        for slot, process in self._sort_processes(processes):
            snapshot = process.snapshot
            cells = {
                "slot": slot,
                "pid": str(process.pid),
                "user": snapshot.user[:10],
                "cpu": f"{snapshot.cpu_percent:5.1f}",
                "mem": f"{snapshot.memory_percent:5.1f}",
                "rss": format_bytes(snapshot.resident_bytes),
                "uptime": format_uptime(snapshot.uptime),
                "command": snapshot.command[:50],
            }
            if slot in self._current_slots:
                for column, value in cells.items():
                    table.update_cell(slot, column, value)
            else:
                table.add_row(*cells.values(), key=slot)

        self._current_slots = new_slots

    def reset(self) -> None:
        self.query_one("#process-table", DataTable).clear()
        self._current_slots = set()

    def _sort_processes(self, processes: dict[str, ProcessHandle]) -> list[tuple[str, ProcessHandle]]:
        key_func = {
            SortKey.CPU: lambda item: item[1].snapshot.cpu_percent,
            SortKey.MEM: lambda item: item[1].snapshot.memory_percent,
            SortKey.PID: lambda item: item[1].pid,
            SortKey.UPTIME: lambda item: item[1].snapshot.uptime,
        }
        return sorted(processes.items(), key=key_func[self._sort_key], reverse=self._sort_reverse)


class PyherdApp(App):
    """Main pyherd application. Its event loop is the supervisor's main thread."""

    TITLE = "pyherd"
    SUB_TITLE = "Process Supervisor"

    CSS = """
    Screen {
        layout: vertical;
    }

    #supervisor-stats {
        dock: top;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("Q", "stop_all", "Stop all & quit"),
        ("plus", "more", "More"),
        ("minus", "less", "Less"),
        ("r", "restart", "Restart job"),
        ("f6", "sort", "Sort"),
    ]

    def __init__(self, supervisor: Supervisor, settings: PyherdSettings | None = None) -> None:
        super().__init__()
        self._supervisor = supervisor
        self._settings = settings or PyherdSettings()
        self._selected_job: str | None = next(iter(supervisor.jobs), None)

    def compose(self) -> ComposeResult:
        yield SupervisorStats(id="supervisor-stats")
        yield JobTable()
        yield ProcessList()
        yield Footer()

    def on_mount(self) -> None:
        """Run a first beat once the tables exist, then keep beating and collecting completions."""
        self.call_after_refresh(self._beat)
        self.set_interval(self._settings.beat_interval, self._beat)
        self.set_interval(self._settings.poll_interval, self._check_for_updates)

    def _beat(self) -> None:
        try:
            self._supervisor.beat()
        except RECOVERABLE_ERRORS as exc:
            logger.exception("Beat failed")
            self.notify(str(exc), severity="error")
        self._refresh_view()

    def _check_for_updates(self) -> None:
        """Deliver finished terminations and refresh if anything changed."""
        try:
            delivered = self._supervisor.process_completions()
        except RECOVERABLE_ERRORS as exc:
            logger.exception("Collecting terminations failed")
            self.notify(str(exc), severity="error")
            delivered = 1
        if delivered:
            self._refresh_view()

    def _refresh_view(self) -> None:
        self.query_one(SupervisorStats).update_stats(self._supervisor)
        self.query_one(JobTable).update_jobs(self._supervisor)
        process_list = self.query_one(ProcessList)
        if self._selected_job is None:
            process_list.reset()
        else:
            process_list.update_processes(self._supervisor[self._selected_job].running_processes())

    def on_data_table_row_highlighted(self, event: DataTable.RowHighlighted) -> None:
        if event.data_table.id != "job-table" or event.row_key.value is None:
            return
        if event.row_key.value != self._selected_job:
            self._selected_job = event.row_key.value
            self.query_one(ProcessList).reset()
            self._refresh_view()

    def _instruct(self, instruction: str) -> None:
        if self._selected_job is None:
            return
        try:
            self.notify(run_instruction(self._supervisor, self._selected_job, instruction))
        except RECOVERABLE_ERRORS as exc:
            self.notify(str(exc), severity="error")
        self._refresh_view()

    def action_more(self) -> None:
        self._instruct("more")

    def action_less(self) -> None:
        self._instruct("less")

    def action_restart(self) -> None:
        self._instruct("restart")

    def action_sort(self) -> None:
        """Cycle through sort keys."""
        new_sort_key = self.query_one(ProcessList).cycle_sort()
        self.notify(f"Sort: {new_sort_key.value.upper()}")
        self._refresh_view()

    def action_stop_all(self) -> None:
        """Stop every supervised process, then quit once they are all gone."""
        self.notify("Stopping all processes...")
        self._supervisor.shutdown(self.exit)
        self._refresh_view()

    def action_quit(self) -> None:
        """Quit, leaving supervised processes running for the next session."""
        self._supervisor.save_state()
        self.exit()


def main() -> None:
    """Entry point for the pyherd application."""
    settings = PyherdSettings()
    configure_logging(settings)
    supervisor = Supervisor(
        load_jobs(settings),
        state_file=settings.state_file,
        table=ProcessTable(poll_interval=settings.poll_interval),
    )
    app = PyherdApp(supervisor, settings)
    try:
        app.run()
    finally:
        supervisor.close()


if __name__ == "__main__":
    main()
