"""Entry point helpers for a benchmark process.

The orchestrator builds each benchmark with a feature list and exports the
same list in ``TENSORBENCH_FEATURES``, since cargo consumes ``--features``
itself.  When sharing, the collector URL and token follow the ``--``::

    <bench> --bench --sharing-url URL --sharing-token T

Unknown arguments are expected (cargo passes its own) so they are scanned
rather than parsed.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

from tensorbench.bench.benchmark import TimingSettings
from tensorbench.bench.results import (
    BenchmarkRecord,
    BenchmarkResult,
    SystemInfo,
    default_cache_dir,
    save_records,
)
from tensorbench.logging import setup_logging
from tensorbench.runner.backends import BACKENDS, DTYPES
from tensorbench.runner.config import FeatureSelectionError

log = logging.getLogger("tensorbench")

VERSION_ENV = "TENSORBENCH_VERSION"
FEATURES_ENV = "TENSORBENCH_FEATURES"

BenchFunction = Callable[[str, str, TimingSettings], Sequence[BenchmarkResult]]


def get_argument(args: Sequence[str], name: str) -> str | None:
    """Return the value following *name* in *args*, or None."""
    for i, arg in enumerate(args[:-1]):
        if arg == name:
            return args[i + 1]
    return None


def get_sharing_url(args: Sequence[str]) -> str | None:
    return get_argument(args, "--sharing-url")


def get_sharing_token(args: Sequence[str]) -> str | None:
    return get_argument(args, "--sharing-token")


def select_features(features: str | Sequence[str]) -> tuple[str, str]:
    """Pick the backend and dtype out of an enabled feature list.

    Features may be crate-qualified (``crate/cuda``).  Anything that is
    neither a backend nor a dtype (legacy markers, bench extras) is ignored.

    Raises:
        FeatureSelectionError: unless exactly one backend and exactly one
            dtype are enabled.
    """
    if isinstance(features, str):
        features = features.split(",")
    names = {f.strip().rsplit("/", 1)[-1] for f in features if f.strip()}

    backends = sorted(names & set(BACKENDS))
    dtypes = sorted(names & set(DTYPES))

    if len(backends) != 1:
        found = ", ".join(backends) or "-"
        raise FeatureSelectionError(
            f"Expected exactly one backend feature, got {len(backends)}: {found}"
        )
    if len(dtypes) != 1:
        found = ", ".join(dtypes) or "-"
        raise FeatureSelectionError(
            f"Expected exactly one dtype feature, got {len(dtypes)}: {found}"
        )
    return backends[0], dtypes[0]


def save_result(
    results: Sequence[BenchmarkResult],
    *,
    backend: str,
    device: str,
    feature: str,
    url: str | None = None,
    token: str | None = None,
    environ: Mapping[str, str] | None = None,
    cache_dir: Path | None = None,
) -> list[Path]:
    """Wrap *results* into records and persist (and optionally share) them."""
    env = os.environ if environ is None else environ
    library_version = env.get(VERSION_ENV) or "main"
    system_info = SystemInfo.collect()

    records = [
        BenchmarkRecord(
            backend=backend,
            device=device,
            feature=feature,
            library_version=library_version,
            system_info=system_info,
            results=result,
        )
        for result in results
    ]
    return save_records(records, url, token, cache_dir=cache_dir or default_cache_dir(env))


def main(
    bench: BenchFunction,
    *,
    argv: Sequence[str] | None = None,
    environ: Mapping[str, str] | None = None,
    device: str = "default",
) -> int:
    """Run *bench* for the selected backend/dtype and save its results.

    *bench* is called as ``bench(backend, dtype, settings)`` and returns the
    BenchmarkResults to save.  Exceptions from the workload propagate so the
    process exits non-zero.
    """
    args = list(sys.argv[1:] if argv is None else argv)
    env = os.environ if environ is None else environ
    setup_logging()

    features = env.get(FEATURES_ENV) or get_argument(args, "--features")
    if not features:
        raise FeatureSelectionError(
            f"No {FEATURES_ENV} or --features given to the benchmark process"
        )
    backend, dtype = select_features(features)

    settings = TimingSettings.from_env(env)
    log.info("Running on %s (%s), %d samples", backend, dtype, settings.num_samples)
    results = bench(backend, dtype, settings)

    save_result(
        results,
        backend=backend,
        device=device,
        feature=backend,
        url=get_sharing_url(args),
        token=get_sharing_token(args),
        environ=env,
    )
    return 0
