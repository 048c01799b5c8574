"""Benchmark result data structures, persistence and sharing.

Hierarchy::

    BenchmarkRecord (one workload on one backend/dtype/version)
      → system_info: SystemInfo
      → results: BenchmarkResult
        → raw: BenchmarkDurations
        → computed: BenchmarkComputations

Files produced under the cache directory::

    benchmarks/bench_<name>_<timestamp>.json   — one BenchmarkRecord each
    benchmark_results.txt                       — one record path per line

The results log is how the benchmark process hands its records back to
the orchestrator, which reads it once at the end of a run.
"""

from __future__ import annotations

import json
import logging
import os
import platform
import socket
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import requests

from tensorbench.bench.stats import BenchmarkComputations

log = logging.getLogger("tensorbench")

CACHE_DIR_ENV = "TENSORBENCH_CACHE_DIR"
RESULTS_LOG_NAME = "benchmark_results.txt"
RECORDS_DIR_NAME = "benchmarks"


# ---------------------------------------------------------------------------
# Cache locations
# ---------------------------------------------------------------------------


def default_cache_dir(environ: Mapping[str, str] | None = None) -> Path:
    """Return the cache directory, honouring ``TENSORBENCH_CACHE_DIR``."""
    env = os.environ if environ is None else environ
    override = env.get(CACHE_DIR_ENV)
    if override:
        return Path(override)
    return Path.home() / ".cache" / "tensorbench"


def results_log_path(cache_dir: Path) -> Path:
    return cache_dir / RESULTS_LOG_NAME


def records_dir(cache_dir: Path) -> Path:
    return cache_dir / RECORDS_DIR_NAME


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class BenchmarkDurations:
    """Raw per-sample durations, in seconds."""

    timing_method: str = "system"
    durations: list[float] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"timing_method": self.timing_method, "durations": list(self.durations)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BenchmarkDurations:
        return cls(
            timing_method=data.get("timing_method", "system"),
            durations=[float(d) for d in data.get("durations", [])],
        )


def _check_str(data: dict[str, Any], key: str) -> str:
    value = data[key]
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string, got {type(value).__name__}")
    return value


def _check_shapes(value: Any) -> list[list[int]]:
    if not isinstance(value, list) or not all(
        isinstance(shape, list)
        and all(isinstance(dim, int) and not isinstance(dim, bool) for dim in shape)
        for shape in value
    ):
        raise ValueError(f"shapes must be a list of integer lists, got {value!r}")
    return [list(shape) for shape in value]


@dataclass
class BenchmarkResult:
    """Result of one workload run by the timing engine."""

    name: str
    shapes: list[list[int]]
    raw: BenchmarkDurations
    computed: BenchmarkComputations
    git_hash: str = ""
    timestamp: int = 0  # milliseconds since the epoch
    options: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        return {
            "name": self.name,
            "shapes": [list(shape) for shape in self.shapes],
            "raw": self.raw.to_dict(),
            "computed": self.computed.to_dict(),
            "git_hash": self.git_hash,
            "timestamp": self.timestamp,
            "options": self.options,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BenchmarkResult:
        """Deserialize from a dict, ignoring unknown fields.

        Raises ValueError when name or shapes have the wrong type.
        """
        return cls(
            name=_check_str(data, "name"),
            shapes=_check_shapes(data.get("shapes", [])),
            raw=BenchmarkDurations.from_dict(data.get("raw", {})),
            computed=BenchmarkComputations.from_dict(data["computed"]),
            git_hash=data.get("git_hash", ""),
            timestamp=int(data.get("timestamp", 0)),
            options=data.get("options"),
        )


@dataclass
class SystemInfo:
    """Minimal description of the machine that produced a record."""

    os_name: str = ""
    hostname: str = ""
    python_version: str = ""

    @classmethod
    def collect(cls) -> SystemInfo:
        return cls(
            os_name=f"{platform.system()} {platform.release()}".strip(),
            hostname=socket.gethostname(),
            python_version=sys.version.split()[0],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "os": {"name": self.os_name},
            "hostname": self.hostname,
            "python_version": self.python_version,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SystemInfo:
        return cls(
            os_name=data.get("os", {}).get("name", ""),
            hostname=data.get("hostname", ""),
            python_version=data.get("python_version", ""),
        )


@dataclass
class BenchmarkRecord:
    """A result together with the context it was measured in."""

    backend: str
    device: str
    feature: str
    library_version: str
    results: BenchmarkResult
    system_info: SystemInfo = field(default_factory=SystemInfo)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        return {
            "backend": self.backend,
            "device": self.device,
            "feature": self.feature,
            "library_version": self.library_version,
            "system_info": self.system_info.to_dict(),
            "results": self.results.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BenchmarkRecord:
        """Deserialize from a dict.

        Raises KeyError on missing fields and ValueError on mistyped ones.
        """
        return cls(
            backend=_check_str(data, "backend"),
            device=_check_str(data, "device"),
            feature=_check_str(data, "feature"),
            library_version=_check_str(data, "library_version"),
            system_info=SystemInfo.from_dict(data.get("system_info", {})),
            results=BenchmarkResult.from_dict(data["results"]),
        )


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


def record_filename(record: BenchmarkRecord) -> str:
    name = record.results.name.replace("/", "_").replace(" ", "_")
    return f"bench_{name}_{record.results.timestamp}.json"


def save_record(record: BenchmarkRecord, cache_dir: Path) -> Path:
    """Write *record* as JSON and append its path to the results log."""
    directory = records_dir(cache_dir)
    directory.mkdir(parents=True, exist_ok=True)

    path = directory / record_filename(record)
    path.write_text(json.dumps(record.to_dict(), indent=2), encoding="utf-8")

    with open(results_log_path(cache_dir), "a", encoding="utf-8") as f:
        f.write(str(path) + "\n")

    log.debug("Saved benchmark record to %s", path)
    return path


def load_record(path: Path) -> BenchmarkRecord:
    """Load one record.  Raises OSError, ValueError or KeyError when unusable."""
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Record must be a JSON object: {path}")
    return BenchmarkRecord.from_dict(data)


def authorization_header(token: str) -> str:
    """Return the Authorization header value for a GitHub token.

    App user tokens (``ghu_``) use the Bearer scheme; fine-grained
    personal access tokens (``github_pat_``) use the token scheme.
    """
    if token.startswith("ghu_"):
        return f"Bearer {token}"
    if token.startswith("github_pat_"):
        return f"token {token}"
    raise ValueError("Unsupported token format: expected a 'ghu_' or 'github_pat_' token")


def upload_record(
    record: BenchmarkRecord,
    url: str,
    token: str,
    *,
    timeout: float = 30.0,
) -> bool:
    """POST *record* to the sharing server.

    Returns True on success.  Failures are logged and never raised.
    """
    endpoint = f"{url.rstrip('/')}/benchmarks"
    try:
        headers = {
            "Authorization": authorization_header(token),
            "Accept": "application/json",
        }
    except ValueError as exc:
        log.warning("Not sharing %s: %s", record.results.name, exc)
        return False

    log.info("Sharing results for %s", record.results.name)
    try:
        resp = requests.post(endpoint, json=record.to_dict(), headers=headers, timeout=timeout)
    except requests.RequestException as exc:
        log.warning("Failed to upload %s: %s", record.results.name, exc)
        return False

    if resp.status_code >= 400:
        log.warning(
            "Upload of %s rejected: HTTP %d %s",
            record.results.name,
            resp.status_code,
            resp.text[:200],
        )
        return False
    return True


def save_records(
    records: Sequence[BenchmarkRecord],
    url: str | None = None,
    token: str | None = None,
    *,
    cache_dir: Path | None = None,
) -> list[Path]:
    """Persist *records* and share them when both *url* and *token* are given.

    Returns:
        The paths of the written record files.
    """
    cache_dir = cache_dir or default_cache_dir()
    paths = [save_record(record, cache_dir) for record in records]

    if url and token:
        for record in records:
            upload_record(record, url, token)

    return paths
