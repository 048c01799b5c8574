"""Collection and rendering of a run's results.

The benchmark processes append the paths of their record files to the
results log; the orchestrator loads them once every cell has run, adds the
cells that failed, and renders a single markdown-style table.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import click

from tensorbench.bench.results import BenchmarkRecord, load_record, results_log_path
from tensorbench.formatting import format_shapes, format_table, format_time

log = logging.getLogger("tensorbench")

HEADERS = ["Benchmark", "Library Version", "Shapes", "Feature", "Backend", "Device", "Median"]
_ALIGNMENTS = ["l", "l", "l", "l", "l", "l", "r"]
_SEPARATOR = ["----"] * len(HEADERS)


@dataclass
class FailedBenchmark:
    """A cell whose benchmark process exited non-zero."""

    bench: str
    backend: str
    version: str = ""

    def rerun_command(self) -> str:
        benches = self.bench.replace(", ", " ")
        command = f"tensorbench run --benches {benches} --backends {self.backend}"
        if self.version:
            command += f" --versions {self.version}"
        return command + " --verbose"

    def __str__(self) -> str:
        return (
            "Run the benchmark with verbose enabled to see the error:\n"
            f"{self.rerun_command()}"
        )


@dataclass
class BenchmarkCollection:
    """Successful records and failed cells of one run."""

    cache_dir: Path
    records: list[BenchmarkRecord] = field(default_factory=list)
    failed: list[FailedBenchmark] = field(default_factory=list)

    @classmethod
    def create(cls, cache_dir: Path) -> BenchmarkCollection:
        """Start a collection, discarding the log left by a previous run."""
        results_log_path(cache_dir).unlink(missing_ok=True)
        return cls(cache_dir=cache_dir)

    @property
    def results_log(self) -> Path:
        return results_log_path(self.cache_dir)

    def push_failed(self, failed: FailedBenchmark) -> None:
        self.failed.append(failed)

    def load_records(self) -> BenchmarkCollection:
        """Load every record listed in the results log, then remove the log.

        Missing or corrupt record files are skipped with a warning.
        """
        log_path = self.results_log
        if not log_path.exists():
            return self

        for line in log_path.read_text(encoding="utf-8").splitlines():
            path_str = line.strip()
            if not path_str:
                continue
            path = Path(path_str)
            try:
                self.records.append(load_record(path))
            except FileNotFoundError:
                log.warning("Cannot find the benchmark record file: %s", path)
            except (OSError, ValueError, KeyError, TypeError) as exc:
                log.warning("Skipping unreadable benchmark record %s: %s", path, exc)

        log_path.unlink(missing_ok=True)
        return self

    def sorted_records(self) -> list[BenchmarkRecord]:
        """Records ordered by name, then shapes, then median."""
        return sorted(
            self.records,
            key=lambda r: (r.results.name, r.results.shapes, r.results.computed.median),
        )

    def table_rows(self) -> list[tuple[str, list[str]]]:
        """Return ``(kind, cells)`` rows; kind is ok, separator or failed."""
        rows: list[tuple[str, list[str]]] = []
        previous: tuple[str, list[list[int]]] | None = None

        for record in self.sorted_records():
            group = (record.results.name, record.results.shapes)
            if previous is not None and group != previous:
                rows.append(("separator", list(_SEPARATOR)))
            previous = group
            rows.append(
                (
                    "ok",
                    [
                        record.results.name,
                        record.library_version,
                        format_shapes(record.results.shapes),
                        record.feature,
                        f"`{record.backend}`",
                        record.device,
                        format_time(record.results.computed.median),
                    ],
                )
            )

        for failed in self.failed:
            cells = [failed.bench, "-", "-", "-", f"`{failed.backend}`", "-", "FAILED"]
            rows.append(("failed", cells))
        return rows

    def render(self) -> str:
        """Render the results table, coloured, with re-run hints for failures."""
        rows = self.table_rows()
        lines = format_table(HEADERS, [cells for _, cells in rows], alignments=_ALIGNMENTS)

        out = lines[:2]
        for (kind, _), line in zip(rows, lines[2:]):
            if kind == "ok":
                out.append(click.style(line, fg="green"))
            elif kind == "failed":
                out.append(click.style(line, fg="red"))
            else:
                out.append(click.style(line, dim=True))

        if self.failed:
            out.append("")
            out.extend(str(failed) for failed in self.failed)
        return "\n".join(out)

    def __str__(self) -> str:
        return self.render()
