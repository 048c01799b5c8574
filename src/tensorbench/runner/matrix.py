"""Benchmark matrix execution.

Orchestrates, for every (version, backend, dtype) cell in that nesting
order:

1. Feature selection from the bench crate's manifest
2. Dependency patching (restored before the next cell, whatever happens)
3. ``cargo bench`` under the process supervisor
4. Success/failure bookkeeping

then renders one report for the whole run and, when configured, shares
the link and notifies the CI webhook.  Cells run strictly one at a time.
A failing cell is recorded and never retried; configuration and manifest
errors abort the run.
"""

from __future__ import annotations

import logging
import tomllib
import urllib.parse
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import click

from tensorbench.auth import get_username
from tensorbench.bench.harness import FEATURES_ENV, VERSION_ENV
from tensorbench.bench.results import SystemInfo
from tensorbench.logging import endgroup, group
from tensorbench.runner.config import (
    AuthError,
    ConfigError,
    ManifestError,
    OrchestratorSettings,
    PatchSettings,
    RunConfig,
    validate_config,
)
from tensorbench.runner.dependency import SemVer, classify, patch
from tensorbench.runner.processor import (
    CargoRunner,
    NiceProcessor,
    OutputProcessor,
    Profiling,
    SinkProcessor,
    VerboseProcessor,
)
from tensorbench.runner.progress import RunnerProgressBar
from tensorbench.runner.reports import BenchmarkCollection, FailedBenchmark
from tensorbench.workflow import send_output_results, send_started_event

log = logging.getLogger("tensorbench")

V0_17_0 = SemVer(0, 17, 0)
V0_18_0 = SemVer(0, 18, 0)


# ---------------------------------------------------------------------------
# Cell helpers
# ---------------------------------------------------------------------------


def resolve_version_alias(version: str) -> str:
    """Map ``PR#<number>_<sha>`` to ``<sha>``; other versions are unchanged."""
    if version.startswith("PR#"):
        _, sep, sha = version[3:].partition("_")
        if sep and sha:
            return sha
    return version


def legacy_marker(version: str) -> str | None:
    """Return the compatibility feature needed for an older release, if any."""
    parsed = SemVer.parse(version)
    if parsed is None:
        return None
    if parsed < V0_17_0:
        return "legacy-v16"
    if parsed < V0_18_0:
        return "legacy-v17"
    return None


def required_features(crate_dir: Path, bench: str) -> list[str]:
    """Return the ``required-features`` of the ``[[bench]]`` named *bench*."""
    manifest = crate_dir / "Cargo.toml"
    try:
        with open(manifest, "rb") as f:
            data = tomllib.load(f)
    except OSError as exc:
        raise ManifestError(f"Cannot read manifest {manifest}: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ManifestError(f"Invalid TOML in {manifest}: {exc}") from exc

    for entry in data.get("bench", []):
        if entry.get("name") == bench:
            return [str(f) for f in entry.get("required-features", [])]
    return []


def build_features(
    crate: str,
    backend: str,
    dtype: str,
    version: str,
    extras: Sequence[str] = (),
) -> str:
    """Compose the ``--features`` value for one cell."""
    features = [f"{crate}/{backend}", f"{crate}/{dtype}"]
    marker = legacy_marker(version)
    if marker is not None:
        features.append(f"{crate}/{marker}")
    for extra in extras:
        feature = f"{crate}/{extra}"
        if feature not in features:
            features.append(feature)
    return ",".join(features)


def cargo_args(
    benches: Sequence[str],
    features: str,
    target_dir: str,
    *,
    sharing_url: str | None = None,
    token: str | None = None,
) -> list[str]:
    """Build the arguments following ``cargo bench``."""
    if list(benches) == ["all"]:
        args = ["--benches"]
    else:
        args = []
        for bench in benches:
            args += ["--bench", bench]
    args += ["--features", features, "--target-dir", target_dir]

    if token is not None and sharing_url is not None:
        args += ["--", "--sharing-url", sharing_url, "--sharing-token", token]
    return args


def web_results_url(
    website_url: str,
    nickname: str,
    os_name: str,
    versions: Sequence[str],
) -> str:
    """Link to the community results page for this user, OS and versions."""
    encoded_os = urllib.parse.quote(os_name, safe="")
    encoded_versions = urllib.parse.quote(",".join(versions), safe="")
    return (
        f"{website_url}benchmarks/community-benchmarks?user={nickname}"
        f"&sysHardware=Any&os={encoded_os}&burnVersions={encoded_versions}"
    )


# ---------------------------------------------------------------------------
# Matrix runner
# ---------------------------------------------------------------------------


@dataclass
class CellOutcome:
    version: str
    backend: str
    dtype: str
    exit_code: int

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


@dataclass
class MatrixResult:
    """What a completed run produced."""

    collection: BenchmarkCollection
    table: str
    share_link: str | None = None
    outcomes: list[CellOutcome] = field(default_factory=list)

    @property
    def failed_count(self) -> int:
        return sum(1 for o in self.outcomes if not o.succeeded)


RunnerFactory = Callable[..., Any]


class MatrixRunner:
    """Executes every cell of a run according to a RunConfig.

    Usage::

        config = RunConfig(backends=["wgpu"], versions=["0.16.0", "main"])
        result = MatrixRunner(config, OrchestratorSettings.from_env()).run()
        print(result.table)
    """

    def __init__(
        self,
        config: RunConfig,
        settings: OrchestratorSettings,
        *,
        patch_settings: PatchSettings | None = None,
        token: str | None = None,
        runner_factory: RunnerFactory = CargoRunner,
        progress_bar_factory: Callable[[int], RunnerProgressBar] = RunnerProgressBar,
        quiet: bool = False,
    ) -> None:
        self.config = config
        self.settings = settings
        self.patch_settings = patch_settings or PatchSettings(library_dir=settings.library_dir)
        self.token = token
        self.runner_factory = runner_factory
        self.progress_bar_factory = progress_bar_factory
        self.quiet = quiet
        self.progress_bar: RunnerProgressBar | None = None

    @property
    def profiling(self) -> Profiling:
        if self.config.profile:
            return Profiling.enabled(self.config.ncu_path, self.config.ncu_ui_path)
        return Profiling.disabled()

    def validate(self) -> None:
        """Normalize the config and raise ConfigError on fatal problems."""
        self.config.normalize()
        errors = validate_config(self.config)
        for warning in (e for e in errors if e.severity == "warning"):
            log.warning("Config warning: %s: %s", warning.field, warning.message)
        fatal = [e for e in errors if e.severity == "error"]
        if fatal:
            messages = [f"  {e.field}: {e.message}" for e in fatal]
            raise ConfigError("Invalid run configuration:\n" + "\n".join(messages))

    def run(self) -> MatrixResult:
        """Run the whole matrix and build the report."""
        self.validate()
        config = self.config

        collection = BenchmarkCollection.create(self.settings.cache_dir)
        if not config.verbose and not self.quiet:
            self.progress_bar = self.progress_bar_factory(config.total_cells)

        if self.settings.emit_started_webhook and self.settings.webhook_inputs_file:
            send_started_event(self.settings)

        click.echo(f"\nBenchmarking {self.patch_settings.library_name} @ {config.versions}")
        outcomes: list[CellOutcome] = []
        try:
            for version in config.versions:
                for backend in config.backends:
                    for dtype in config.dtypes:
                        outcome = self._run_cell(version, backend, dtype)
                        outcomes.append(outcome)
                        self._record(outcome, collection)
        finally:
            if self.progress_bar is not None:
                self.progress_bar.finish()

        collection.load_records()
        table = collection.render()
        share_link = self._share_link()

        output = table
        if share_link is not None:
            output += f"\n\n📊 Browse results at {share_link}"
        click.echo(output)

        if self.settings.webhook_inputs_file is not None:
            send_output_results(table, share_link, self.settings)

        return MatrixResult(
            collection=collection,
            table=table,
            share_link=share_link,
            outcomes=outcomes,
        )

    # -- Cells ----------------------------------------------------------------

    def _processor(self, version: str, backend: str) -> OutputProcessor:
        if self.config.verbose:
            return VerboseProcessor()
        if self.progress_bar is None:
            return SinkProcessor()
        return NiceProcessor(
            ", ".join(self.config.benches),
            backend,
            self.progress_bar,
            version=version,
        )

    def _features(self, backend: str, dtype: str, version: str) -> str:
        extras: list[str] = []
        for bench in self.config.benches:
            if bench == "all":
                continue
            extras.extend(required_features(self.config.crate_dir, bench))
        return build_features(self.config.crate, backend, dtype, version, extras)

    def _run_cell(self, version: str, backend: str, dtype: str) -> CellOutcome:
        config = self.config
        bench_str = ", ".join(config.benches)
        ci = self.settings.ci

        if config.verbose:
            group(f"Running benchmarks: {bench_str}@{backend}-{dtype}", ci=ci)
        try:
            features = self._features(backend, dtype, version)
            sharing = not self.profiling.active
            params = cargo_args(
                config.benches,
                features,
                config.target_dir,
                sharing_url=self.settings.sharing_url if sharing else None,
                token=self.token if sharing else None,
            )
            spec = classify(resolve_version_alias(version))

            with patch(
                spec,
                config.crate_dir,
                workspace_root=config.root,
                settings=self.patch_settings,
            ):
                runner = self.runner_factory(
                    params,
                    {VERSION_ENV: version, FEATURES_ENV: features},
                    self._processor(version, backend),
                    self.profiling,
                    cwd=config.root,
                    target_dir=config.target_dir,
                )
                exit_code = runner.run()
        finally:
            if config.verbose:
                endgroup(ci=ci)

        log.debug("Cell %s/%s/%s exited with %d", version, backend, dtype, exit_code)
        return CellOutcome(version=version, backend=backend, dtype=dtype, exit_code=exit_code)

    def _record(self, outcome: CellOutcome, collection: BenchmarkCollection) -> None:
        pb = self.progress_bar
        if outcome.succeeded:
            if pb is not None:
                pb.succeeded_inc()
            return

        if pb is not None:
            pb.failed_inc()
        collection.push_failed(
            FailedBenchmark(
                bench=", ".join(self.config.benches),
                backend=outcome.backend,
                version=outcome.version,
            )
        )

    # -- Sharing --------------------------------------------------------------

    def _share_link(self) -> str | None:
        if self.token is None:
            return None
        try:
            user = get_username(self.token, self.settings.server_url)
        except AuthError as exc:
            log.warning("Cannot build the share link: %s", exc)
            return None
        return web_results_url(
            self.settings.website_url,
            user.nickname,
            SystemInfo.collect().os_name,
            self.config.versions,
        )
