"""Command-line interface for tensorbench.

Provides the main CLI entry point with ``auth``, ``list`` and ``run``
subcommands.
"""

from __future__ import annotations

from pathlib import Path

import click

from tensorbench import __version__
from tensorbench.logging import setup_logging
from tensorbench.runner.backends import ALL, BACKENDS, DTYPES
from tensorbench.runner.config import (
    AuthError,
    OrchestratorSettings,
    TensorBenchError,
    config_from_profile,
    load_profile,
)


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """tensorbench — benchmark a tensor library across versions, backends and dtypes."""


@main.command()
def auth() -> None:
    """Check the access token used to share results and show its user."""
    from tensorbench.auth import get_tokens, get_username

    setup_logging()
    settings = OrchestratorSettings.from_env()
    tokens = get_tokens(settings)
    if tokens is None:
        click.echo(
            "❌ Failed to authenticate (missing access token). "
            "Set GITHUB_BOT_TOKEN to a GitHub token.",
            err=True,
        )
        raise SystemExit(1)

    try:
        user = get_username(tokens.access_token, settings.server_url)
    except AuthError as exc:
        click.echo(f"❌ Failed to authenticate ({exc})", err=True)
        raise SystemExit(1) from exc
    click.echo(f"🔑 Your username is: {user.nickname}")


@main.command("list")
def list_backends() -> None:
    """List all available backends and dtypes."""
    click.echo("Available Backends:")
    for backend in (ALL, *BACKENDS):
        click.echo(f"- {backend}")
    click.echo("Available DTypes:")
    for dtype in DTYPES:
        click.echo(f"- {dtype}")


@main.command()
@click.option("-s", "--share", is_flag=True, help="Upload the results to the benchmark server.")
@click.option("-v", "--verbose", is_flag=True, help="Show the build and benchmark output.")
@click.option("-q", "--quiet", is_flag=True, help="No progress bar; only the final report.")
@click.option(
    "-B",
    "--backends",
    multiple=True,
    help="Backends to include (repeatable, or space/comma separated). 'all' for every backend.",
)
@click.option("-b", "--benches", multiple=True, help="Benches to run. Default: all.")
@click.option(
    "-V",
    "--versions",
    multiple=True,
    help="Library versions, git branches, commit hashes or 'local'. Default: main.",
)
@click.option("-d", "--dtypes", multiple=True, help="Float dtypes to use. Default: f32.")
@click.option("-p", "--profile", is_flag=True, help="Run the bench under Nsight Compute.")
@click.option("--ncu-path", default=None, help="Nsight Compute executable.  [default: ncu]")
@click.option(
    "--ncu-ui-path",
    default=None,
    help="Nsight Compute UI executable.  [default: ncu-ui]",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="YAML run profile.  Command-line options override it.",
)
@click.option(
    "--root",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=None,
    help="Workspace root.  [default: current directory]",
)
@click.option("--crate", default=None, help="Bench crate under <root>/crates.")
@click.option("--log-file", type=click.Path(path_type=Path), default=None)
def run(
    share: bool,
    verbose: bool,
    quiet: bool,
    backends: tuple[str, ...],
    benches: tuple[str, ...],
    versions: tuple[str, ...],
    dtypes: tuple[str, ...],
    profile: bool,
    ncu_path: str | None,
    ncu_ui_path: str | None,
    config_path: Path | None,
    root: Path | None,
    crate: str | None,
    log_file: Path | None,
) -> None:
    """Run benchmarks for every version × backend × dtype combination.

    Examples:
        # Two backends on the current main branch
        tensorbench run -B wgpu -B ndarray -b matmul

        # Compare a release against a commit, sharing the results
        tensorbench run -B cuda -V 0.16.0 -V 1a2b3c4 --share
    """
    from tensorbench.auth import get_tokens
    from tensorbench.runner.matrix import MatrixRunner

    setup_logging(verbose=verbose, quiet=quiet, log_file=log_file)

    cli_overrides: dict[str, object] = {
        "backends": list(backends),
        "benches": list(benches),
        "versions": list(versions),
        "dtypes": list(dtypes),
        "share": share,
        "verbose": verbose,
        "profile": profile,
        "ncu_path": ncu_path,
        "ncu_ui_path": ncu_ui_path,
        "root": root,
        "crate": crate,
    }

    try:
        profile_data = load_profile(config_path) if config_path else {}
        config = config_from_profile(profile_data, cli_overrides=cli_overrides)
        settings = OrchestratorSettings.from_env()

        token: str | None = None
        if config.share:
            tokens = get_tokens(settings)
            if tokens is None:
                click.echo("⚠ No access token; results will not be shared.", err=True)
            else:
                token = tokens.access_token

        runner = MatrixRunner(config, settings, token=token, quiet=quiet)
        runner.run()
    except TensorBenchError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        click.echo("\nBenchmark interrupted.", err=True)
        raise SystemExit(130)  # noqa: B904
