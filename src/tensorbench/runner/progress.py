"""Progress display for non-verbose runs.

One bar counts finished matrix cells; a spinner line below it shows what
the current cell is doing (building, running, uploading).  Output from the
benchmark process goes through the processors instead of the terminal.
"""

from __future__ import annotations

import threading

from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)


class RunnerProgressBar:
    """Cell counter plus an activity spinner, safe to drive from several threads.

    Callers take :attr:`lock` around a group of updates that must appear
    together; every public method also locks on its own.
    """

    def __init__(self, total: int, *, console: Console | None = None) -> None:
        self.total = total
        self.succeeded = 0
        self.failed = 0
        self.lock = threading.RLock()
        self._message = ""
        self._finished = False

        self._progress = Progress(
            SpinnerColumn(),
            TextColumn("{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TextColumn("{task.fields[status]}"),
            TimeElapsedColumn(),
            console=console,
            transient=False,
        )
        self._main = self._progress.add_task("Benchmarking", total=total, status="")
        self._spinner = self._progress.add_task("", total=None, visible=False, status="")
        self._progress.start()

    # -- Main bar -------------------------------------------------------------

    def message(self, text: str) -> None:
        """Set the line shown next to the bar."""
        with self.lock:
            self._message = text
            self._progress.update(self._main, description=text)
            self._progress.update(self._spinner, description=text)

    @property
    def current_message(self) -> str:
        return self._message

    def inc_by_one(self) -> None:
        with self.lock:
            self._progress.advance(self._main, 1)

    def succeeded_inc(self) -> None:
        with self.lock:
            self.succeeded += 1
            self._refresh_status()

    def failed_inc(self) -> None:
        with self.lock:
            self.failed += 1
            self._refresh_status()

    def _refresh_status(self) -> None:
        status = f"[green]✓ {self.succeeded}[/green]"
        if self.failed:
            status += f" [red]✗ {self.failed}[/red]"
        self._progress.update(self._main, status=status)

    # -- Spinner --------------------------------------------------------------

    def start_spinner(self) -> None:
        with self.lock:
            self._progress.update(self._spinner, visible=True)

    def stop_spinner(self) -> None:
        with self.lock:
            self._progress.update(self._spinner, visible=False)

    def advance_spinner(self) -> None:
        with self.lock:
            self._progress.advance(self._spinner, 1)

    @property
    def spinner_visible(self) -> bool:
        return self._progress.tasks[self._spinner].visible

    @property
    def completed(self) -> int:
        return int(self._progress.tasks[self._main].completed)

    # -- Lifetime -------------------------------------------------------------

    def finish(self) -> None:
        """Stop rendering.  Safe to call more than once."""
        with self.lock:
            if self._finished:
                return
            self._finished = True
            self._progress.update(self._spinner, visible=False)
            self._progress.stop()
