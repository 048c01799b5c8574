"""Orchestrator configuration, run profiles and error types.

Handles:
- Reading the environment once, at the process edge (OrchestratorSettings).
- Loading run profiles from YAML files.
- Merging CLI options with profile values (CLI wins).
- Validating the final run configuration before any manifest is touched.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from tensorbench.bench.results import default_cache_dir
from tensorbench.logging import in_ci
from tensorbench.runner.backends import (
    ALL,
    DTYPES,
    expand_backends,
    split_values,
    unknown_backends,
    unknown_dtypes,
)

COLLECTOR_URL = "https://user-benchmark-server-812794505978.northamerica-northeast1.run.app/v1/"
WEBSITE_URL = "https://burn.dev/"
BENCHMARKS_TARGET_DIR = "target/benchmarks"
LIBRARY_REPO_URL = "https://github.com/tracel-ai/burn"
DEFAULT_LIBRARY_DIR = "../burn/"
DEFAULT_CRATE = "backend-comparison"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TensorBenchError(Exception):
    """Base class for errors that abort a tensorbench command."""


class ConfigError(TensorBenchError):
    """The run configuration or a run profile is invalid."""


class ManifestError(TensorBenchError):
    """A build manifest is missing, unreadable or unwritable."""


class PatchInProgressError(TensorBenchError):
    """A manifest already has an outstanding patch guard."""


class ToolNotFoundError(TensorBenchError):
    """An external tool (profiler, cargo) could not be located."""


class AuthError(TensorBenchError):
    """No usable access token, or the collector rejected it."""


class FeatureSelectionError(TensorBenchError):
    """The benchmark process was not given exactly one backend and one dtype."""


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def _env_flag(value: str | None) -> bool:
    return value is not None and value.strip().lower() == "true"


@dataclass
class OrchestratorSettings:
    """Values taken from the environment when a command starts."""

    server_url: str = COLLECTOR_URL
    website_url: str = WEBSITE_URL
    cache_dir: Path = field(default_factory=default_cache_dir)
    library_dir: str = DEFAULT_LIBRARY_DIR
    bot_token: str | None = None
    webhook_secret: str | None = None
    webhook_inputs_file: Path | None = None
    emit_started_webhook: bool = False
    ci: bool = False

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> OrchestratorSettings:
        env = os.environ if environ is None else environ
        inputs_file = env.get("WEBHOOK_INPUTS_FILE")
        return cls(
            cache_dir=default_cache_dir(env),
            library_dir=env.get("TENSORBENCH_LIBRARY_DIR") or DEFAULT_LIBRARY_DIR,
            bot_token=env.get("GITHUB_BOT_TOKEN") or None,
            webhook_secret=env.get("WEBHOOK_PAYLOAD_SECRET") or None,
            webhook_inputs_file=Path(inputs_file) if inputs_file else None,
            emit_started_webhook=_env_flag(env.get("TENSORBENCH_EMIT_STARTED_WEBHOOK")),
            ci=in_ci(env),
        )

    @property
    def sharing_url(self) -> str:
        return f"{self.server_url}benchmarks"


@dataclass
class PatchSettings:
    """How the dependency patcher rewrites manifests."""

    library_name: str = "burn"
    dependency_names: tuple[str, ...] = ("burn", "burn-common", "burn-import")
    repo_url: str = LIBRARY_REPO_URL
    library_dir: str = DEFAULT_LIBRARY_DIR
    settle_seconds: float = 0.2


@dataclass
class RunConfig:
    """Resolved configuration for a ``tensorbench run``."""

    backends: list[str] = field(default_factory=list)
    benches: list[str] = field(default_factory=list)
    versions: list[str] = field(default_factory=list)
    dtypes: list[str] = field(default_factory=list)

    share: bool = False
    verbose: bool = False

    profile: bool = False
    ncu_path: str = "ncu"
    ncu_ui_path: str = "ncu-ui"

    root: Path = field(default_factory=Path.cwd)
    crate: str = DEFAULT_CRATE
    target_dir: str = BENCHMARKS_TARGET_DIR

    def normalize(self) -> None:
        """Apply the defaults and expand ``all``.  Idempotent."""
        self.backends = expand_backends(split_values(self.backends))
        self.benches = split_values(self.benches) or ["all"]
        self.versions = split_values(self.versions) or ["main"]
        self.dtypes = split_values(self.dtypes) or ["f32"]

    @property
    def crate_dir(self) -> Path:
        return self.root / "crates" / self.crate

    @property
    def total_cells(self) -> int:
        return len(self.backends) * len(self.versions) * len(self.dtypes)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@dataclass
class ValidationError:
    """A single configuration validation error."""

    field: str
    message: str
    severity: str = "error"  # "error" or "warning"


def validate_config(config: RunConfig) -> list[ValidationError]:
    """Validate a normalized run configuration.

    Returns a list of validation errors.  Empty list means valid.
    """
    errors: list[ValidationError] = []

    if not config.backends:
        errors.append(
            ValidationError(
                field="backends",
                message="No backends selected. Use --backends to choose at least one.",
            )
        )

    bad = unknown_backends(config.backends)
    if bad:
        errors.append(
            ValidationError(
                field="backends",
                message=(
                    f"Unknown backend(s): {', '.join(bad)}. "
                    f"Run 'tensorbench list' to see the available backends."
                ),
            )
        )

    bad = unknown_dtypes(config.dtypes)
    if bad:
        errors.append(
            ValidationError(
                field="dtypes",
                message=(
                    f"Unknown dtype(s): {', '.join(bad)}. "
                    f"Expected one of: {', '.join(DTYPES)}."
                ),
            )
        )

    if ALL in config.benches and len(config.benches) > 1:
        errors.append(
            ValidationError(
                field="benches",
                message="'all' runs every bench; the other bench names are ignored.",
                severity="warning",
            )
        )

    manifest = config.crate_dir / "Cargo.toml"
    if not manifest.is_file():
        errors.append(
            ValidationError(
                field="crate",
                message=f"Bench crate manifest not found: {manifest}",
            )
        )

    if config.profile and config.benches == ["all"]:
        errors.append(
            ValidationError(
                field="profile",
                message="Profiling needs explicit bench names (--benches).",
            )
        )

    return errors


# ---------------------------------------------------------------------------
# YAML profile loading
# ---------------------------------------------------------------------------


def load_profile(profile_path: Path) -> dict[str, Any]:
    """Load a run profile from a YAML file.

    Profile format::

        crate: backend-comparison
        root: /path/to/workspace
        backends: [cuda, wgpu-fusion]
        benches: [matmul, unary]
        versions: ["0.16.0", main]
        dtypes: [f32, f16]
        share: false

    Returns:
        The parsed YAML as a dict.
    """
    import yaml

    if not profile_path.exists():
        raise ConfigError(f"Profile not found: {profile_path}")

    try:
        data = yaml.safe_load(profile_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {profile_path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigError(f"Profile must be a YAML mapping, got {type(data).__name__}")

    return data


def _as_list(value: Any, key: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [str(v) for v in value]
    raise ConfigError(f"Profile '{key}' must be a string or a list, got {type(value).__name__}")


def config_from_profile(
    profile_data: dict[str, Any],
    *,
    cli_overrides: dict[str, Any] | None = None,
) -> RunConfig:
    """Build a RunConfig from a parsed profile.

    CLI overrides take precedence over profile values.  List options given
    on the command line replace the profile's list entirely.

    Args:
        profile_data: Parsed YAML profile dict (may be empty).
        cli_overrides: CLI option values keyed by RunConfig field name.

    Returns:
        RunConfig, not yet normalized.
    """
    cli = cli_overrides or {}

    def _list(key: str) -> list[str]:
        if cli.get(key):
            return list(cli[key])
        return _as_list(profile_data.get(key), key)

    config = RunConfig(
        backends=_list("backends"),
        benches=_list("benches"),
        versions=_list("versions"),
        dtypes=_list("dtypes"),
        share=bool(cli.get("share") or profile_data.get("share", False)),
        verbose=bool(cli.get("verbose") or profile_data.get("verbose", False)),
        profile=bool(cli.get("profile") or profile_data.get("profile", False)),
        ncu_path=cli.get("ncu_path") or profile_data.get("ncu_path", "ncu"),
        ncu_ui_path=cli.get("ncu_ui_path") or profile_data.get("ncu_ui_path", "ncu-ui"),
        crate=cli.get("crate") or profile_data.get("crate", DEFAULT_CRATE),
    )

    if cli.get("root"):
        config.root = Path(cli["root"])
    elif profile_data.get("root"):
        config.root = Path(profile_data["root"])

    return config
