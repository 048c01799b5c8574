"""Timing contract for a single benchmark workload.

A workload subclasses :class:`Benchmark` and supplies ``prepare``,
``execute``, ``sync`` and ``name``.  :meth:`Benchmark.run` then:

1. calls ``prepare()`` once (setup is never timed);
2. runs ``sync(); start; execute; sync()`` ``warmup_runs`` times and
   discards the timings, then sleeps ``settle_seconds``;
3. collects ``num_samples`` timed runs with the same pattern.

Tensor backends usually queue work asynchronously, which is why every timed
region is bracketed by ``sync()``.  An exception raised by ``execute``
propagates: inside the spawned benchmark process that ends the process, and
the orchestrator records the cell as failed.
"""

from __future__ import annotations

import enum
import logging
import os
import subprocess
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any

from tensorbench.bench.results import BenchmarkDurations, BenchmarkResult
from tensorbench.bench.stats import compute

log = logging.getLogger("tensorbench")

NUM_SAMPLES_ENV = "BENCH_NUM_SAMPLES"
DEFAULT_NUM_SAMPLES = 10


class TimingMethod(str, enum.Enum):
    """How a sample's duration is measured."""

    SYSTEM = "system"  # host wall clock around sync+execute+sync
    DEVICE = "device"  # duration reported by the backend itself


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@dataclass
class TimingSettings:
    """Run parameters shared by every workload of one benchmark process."""

    num_samples: int = DEFAULT_NUM_SAMPLES
    warmup_runs: int = 3
    settle_seconds: float = 1.0
    timing_method: TimingMethod = TimingMethod.SYSTEM

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> TimingSettings:
        """Build settings, honouring the ``BENCH_NUM_SAMPLES`` override.

        An unparseable or non-positive value falls back to the default.
        """
        env = os.environ if environ is None else environ
        raw = env.get(NUM_SAMPLES_ENV)
        num_samples = DEFAULT_NUM_SAMPLES
        if raw is not None:
            try:
                num_samples = int(raw)
            except ValueError:
                log.warning("Ignoring invalid %s=%r", NUM_SAMPLES_ENV, raw)
            if num_samples < 1:
                num_samples = DEFAULT_NUM_SAMPLES
        return cls(num_samples=num_samples)


# ---------------------------------------------------------------------------
# ProfileDuration
# ---------------------------------------------------------------------------


class ProfileDuration:
    """Duration of one profiled run.

    Either already known (host-measured), or a future that resolves to a
    backend-reported device duration.
    """

    def __init__(
        self,
        duration: float | None = None,
        future: Future[float] | None = None,
    ) -> None:
        if (duration is None) == (future is None):
            raise ValueError("ProfileDuration needs exactly one of duration or future")
        self._duration = duration
        self._future = future

    @classmethod
    def from_duration(cls, seconds: float) -> ProfileDuration:
        return cls(duration=seconds)

    @classmethod
    def from_future(cls, future: Future[float]) -> ProfileDuration:
        return cls(future=future)

    @property
    def timing_method(self) -> TimingMethod:
        if self._future is not None:
            return TimingMethod.DEVICE
        return TimingMethod.SYSTEM

    def resolve(self) -> float:
        """Return the duration in seconds, blocking on a pending future."""
        if self._future is not None:
            return float(self._future.result())
        assert self._duration is not None
        return self._duration

    def __repr__(self) -> str:
        if self._future is not None:
            return "ProfileDuration(device)"
        return f"ProfileDuration({self._duration!r})"


# ---------------------------------------------------------------------------
# Benchmark
# ---------------------------------------------------------------------------


class Benchmark(ABC):
    """A single workload measured by the timing engine."""

    @abstractmethod
    def prepare(self) -> Any:
        """Build the inputs.  Not timed; warm-up happens separately."""

    @abstractmethod
    def execute(self, inputs: Any) -> Any:
        """Run the workload and return its output.

        The output must be returned so the work cannot be skipped.
        """

    @abstractmethod
    def sync(self) -> None:
        """Block until outstanding device work has completed."""

    @abstractmethod
    def name(self) -> str:
        """Short name; should match the bench target name."""

    def num_samples(self) -> int | None:
        """Samples to collect; ``None`` defers to the run settings."""
        return None

    def options(self) -> str | None:
        return None

    def shapes(self) -> list[list[int]]:
        return []

    def clone_input(self, inputs: Any) -> Any:
        """Return the inputs for one call.  Override to copy per call."""
        return inputs

    def profile(self, inputs: Any) -> ProfileDuration:
        """Measure one call.  Backends that report kernel time override this."""
        return self.profile_full(inputs)

    def profile_full(self, inputs: Any) -> ProfileDuration:
        """Measure one call with the host clock, whatever the backend offers."""
        self.sync()
        start = time.perf_counter()
        out = self.execute(inputs)
        self.sync()
        elapsed = time.perf_counter() - start
        del out
        return ProfileDuration.from_duration(elapsed)

    def run(self, settings: TimingSettings | None = None) -> BenchmarkDurations:
        """Warm up, then collect the timed samples."""
        settings = settings or TimingSettings()

        def _measure(inputs: Any) -> float:
            if settings.timing_method is TimingMethod.DEVICE:
                profile = self.profile(self.clone_input(inputs))
            else:
                profile = self.profile_full(self.clone_input(inputs))
            return profile.resolve()

        inputs = self.prepare()

        for _ in range(settings.warmup_runs):
            _measure(inputs)
        if settings.settle_seconds > 0:
            time.sleep(settings.settle_seconds)

        num_samples = self.num_samples() or settings.num_samples
        durations = [_measure(inputs) for _ in range(num_samples)]

        return BenchmarkDurations(
            timing_method=settings.timing_method.value,
            durations=durations,
        )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def get_git_hash(cwd: str | None = None) -> str:
    """Return ``HEAD`` of the checkout we run from, or ``""`` outside git."""
    try:
        proc = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            capture_output=True,
            text=True,
            cwd=cwd,
            timeout=10,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired, OSError):
        return ""
    if proc.returncode != 0:
        return ""
    return proc.stdout.strip()


def run_benchmark(
    benchmark: Benchmark,
    settings: TimingSettings | None = None,
    *,
    git_hash: str | None = None,
) -> BenchmarkResult:
    """Run *benchmark* and wrap its durations into a BenchmarkResult."""
    timestamp = int(time.time() * 1000)
    if git_hash is None:
        git_hash = get_git_hash()
    durations = benchmark.run(settings)
    log.debug("%s: %d samples", benchmark.name(), len(durations.durations))

    return BenchmarkResult(
        name=benchmark.name(),
        shapes=[list(shape) for shape in benchmark.shapes()],
        raw=durations,
        computed=compute(durations.durations),
        git_hash=git_hash,
        timestamp=timestamp,
        options=benchmark.options(),
    )
