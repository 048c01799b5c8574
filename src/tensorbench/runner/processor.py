"""Supervision of the build+benchmark command.

The command's stdout and stderr are each read by a dedicated thread; every
line is handed to an :class:`OutputProcessor` and followed by a
``progress()`` tick.  Both threads are joined before ``finish()`` is called
and before the exit status is collected, so no output is lost or reported
after the cell is counted.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Protocol

import click

from tensorbench.runner.config import BENCHMARKS_TARGET_DIR, ConfigError, ToolNotFoundError
from tensorbench.runner.progress import RunnerProgressBar

log = logging.getLogger("tensorbench")


# ---------------------------------------------------------------------------
# Output processors
# ---------------------------------------------------------------------------


class OutputProcessor(Protocol):
    """Receives the supervised command's output, line by line."""

    def process_line(self, line: str) -> None: ...

    def progress(self) -> None: ...

    def finish(self) -> None: ...


class VerboseProcessor:
    """Echo every line as is."""

    def process_line(self, line: str) -> None:
        click.echo(line)

    def progress(self) -> None:
        pass

    def finish(self) -> None:
        pass


class SinkProcessor:
    """Discard everything."""

    def process_line(self, line: str) -> None:
        pass

    def progress(self) -> None:
        pass

    def finish(self) -> None:
        pass


class NiceState:
    DEFAULT = "default"
    COMPILING = "compiling"
    RUNNING = "running"
    UPLOADING = "uploading"


_STATE_ICONS = {
    NiceState.DEFAULT: "🔨",
    NiceState.COMPILING: "🔨",
    NiceState.RUNNING: "🔥",
    NiceState.UPLOADING: "💾",
}


class NiceProcessor:
    """Compact output: summarize the current activity on the progress bar.

    ``Compiling`` and ``Running`` lines hide the spinner, ``Sharing`` lines
    show it while results upload; any other line keeps the build icon.
    """

    def __init__(
        self,
        bench: str,
        backend: str,
        progress_bar: RunnerProgressBar,
        version: str | None = None,
    ) -> None:
        self.bench = bench
        self.backend = backend
        self.version = version
        self.progress_bar = progress_bar
        self.state = NiceState.DEFAULT

    def format_message(self, state: str) -> str:
        text = f"{_STATE_ICONS[state]} {self.bench} ▶ {self.backend}"
        if self.version:
            text += f" @ {self.version}"
        return text

    def process_line(self, line: str) -> None:
        pb = self.progress_bar
        with pb.lock:
            if "Compiling" in line:
                pb.stop_spinner()
                state = NiceState.COMPILING
            elif "Running" in line:
                pb.stop_spinner()
                state = NiceState.RUNNING
            elif "Sharing" in line:
                pb.start_spinner()
                state = NiceState.UPLOADING
            else:
                state = NiceState.DEFAULT
            self.state = state
            pb.message(self.format_message(state))

    def progress(self) -> None:
        self.progress_bar.advance_spinner()

    def finish(self) -> None:
        self.progress_bar.inc_by_one()


# ---------------------------------------------------------------------------
# Running a command
# ---------------------------------------------------------------------------


def _start_reader(stream: IO[bytes], processor: OutputProcessor, name: str) -> threading.Thread:
    """Start a thread forwarding each line of *stream* to *processor*.

    The thread ends when the pipe closes.
    """

    def _reader() -> None:
        try:
            for raw in stream:
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                processor.process_line(line)
                processor.progress()
        except (ValueError, OSError):
            log.debug("%s reader stopped early", name, exc_info=True)
        finally:
            stream.close()

    thread = threading.Thread(target=_reader, name=f"tensorbench-{name}", daemon=True)
    thread.start()
    return thread


def run_command(
    argv: Sequence[str],
    *,
    processor: OutputProcessor,
    env: Mapping[str, str] | None = None,
    cwd: Path | None = None,
) -> int:
    """Run *argv*, streaming its output through *processor*.

    Returns:
        The exit code.  A non-zero exit is a result, not an error.

    Raises:
        ToolNotFoundError: the executable does not exist.
    """
    log.debug("Command line: %s", " ".join(argv))
    try:
        proc = subprocess.Popen(
            list(argv),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=str(cwd) if cwd is not None else None,
            env=dict(env) if env is not None else None,
        )
    except FileNotFoundError as exc:
        raise ToolNotFoundError(f"Cannot run {argv[0]}: {exc}") from exc

    assert proc.stdout is not None and proc.stderr is not None
    stdout_thread = _start_reader(proc.stdout, processor, "stdout")
    stderr_thread = _start_reader(proc.stderr, processor, "stderr")

    stdout_thread.join()
    stderr_thread.join()
    processor.finish()
    return proc.wait()


def run_process(argv: Sequence[str], *, cwd: Path | None = None) -> int:
    """Run *argv* attached to the terminal and return its exit code."""
    log.info("Command line: %s", " ".join(argv))
    try:
        return subprocess.run(list(argv), cwd=str(cwd) if cwd is not None else None).returncode
    except FileNotFoundError as exc:
        raise ToolNotFoundError(f"Cannot run {argv[0]}: {exc}") from exc


# ---------------------------------------------------------------------------
# Cargo
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Profiling:
    """Whether to run the bench under the NVIDIA Nsight Compute profiler."""

    active: bool = False
    ncu_path: str = "ncu"
    ncu_ui_path: str = "ncu-ui"

    @classmethod
    def disabled(cls) -> Profiling:
        return cls()

    @classmethod
    def enabled(cls, ncu_path: str = "ncu", ncu_ui_path: str = "ncu-ui") -> Profiling:
        return cls(active=True, ncu_path=ncu_path, ncu_ui_path=ncu_ui_path)


class CargoRunner:
    """Runs ``cargo bench`` (or a profiled build) for one matrix cell."""

    def __init__(
        self,
        params: Sequence[str],
        envs: Mapping[str, str],
        processor: OutputProcessor,
        profiling: Profiling | None = None,
        *,
        cwd: Path | None = None,
        cargo: str = "cargo",
        target_dir: str = BENCHMARKS_TARGET_DIR,
    ) -> None:
        self.params = list(params)
        self.envs = dict(envs)
        self.processor = processor
        self.profiling = profiling or Profiling.disabled()
        self.cwd = cwd
        self.cargo = cargo
        self.target_dir = target_dir

    def _env(self) -> dict[str, str]:
        env = dict(os.environ)
        env["CARGO_TERM_COLOR"] = "always"
        env.update(self.envs)
        return env

    def run(self) -> int:
        if self.profiling.active:
            return self.run_profile()
        return self.run_bench()

    def run_bench(self) -> int:
        return run_command(
            [self.cargo, "bench", *self.params],
            processor=self.processor,
            env=self._env(),
            cwd=self.cwd,
        )

    # -- Profiling ------------------------------------------------------------

    def _bench_name(self) -> str:
        try:
            return self.params[self.params.index("--bench") + 1]
        except (ValueError, IndexError):
            raise ConfigError("Profiling needs a single --bench target") from None

    def _bench_binaries(self, bench: str) -> list[Path]:
        base = self.cwd or Path(".")
        deps = base / self.target_dir / "release" / "deps"
        return sorted(p for p in deps.glob(f"{bench}-*") if p.suffix != ".d")

    def run_profile(self) -> int:
        bench = self._bench_name()
        log.info("Profiling benchmark %s", bench)

        ncu = shutil.which(self.profiling.ncu_path)
        if ncu is None:
            raise ToolNotFoundError(
                f"Can't find {self.profiling.ncu_path}. "
                "Make sure it is installed and in your PATH."
            )

        for stale in self._bench_binaries(bench):
            stale.unlink()

        status = run_command(
            [self.cargo, "build", "--release", *self.params],
            processor=self.processor,
            env=self._env(),
            cwd=self.cwd,
        )
        if status != 0:
            return status

        binaries = self._bench_binaries(bench)
        if not binaries:
            log.error("No binary found for bench %s after the build", bench)
            return 1

        report = f"target/{bench}"
        status = run_process(
            [
                "sudo",
                "BENCH_NUM_SAMPLES=1",
                f"LIBTORCH={os.environ.get('LIBTORCH', '')}",
                f"LD_LIBRARY_PATH={os.environ.get('LD_LIBRARY_PATH', '')}",
                ncu,
                "--nvtx",
                "--set=full",
                "--call-stack",
                "--export",
                report,
                "--force-overwrite",
                str(binaries[0]),
            ],
            cwd=self.cwd,
        )
        if status != 0:
            return status
        return run_process([self.profiling.ncu_ui_path, f"{report}.ncu-rep"], cwd=self.cwd)
