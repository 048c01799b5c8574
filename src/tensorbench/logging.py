"""Structured logging setup for tensorbench.

This module configures logging with a human-readable console handler and an
optional file handler that always logs at DEBUG level.  It also provides the
log-grouping helpers used when running under a CI system that folds output
into collapsible sections.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path

import click

_LOGGER_NAME = "tensorbench"
_DEFAULT_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
_CONSOLE_FORMAT = "%(levelname)-8s %(message)s"


def setup_logging(
    *,
    verbose: bool = False,
    quiet: bool = False,
    log_file: Path | None = None,
) -> logging.Logger:
    """Configure and return the root tensorbench logger.

    Sets up a console handler whose level is controlled by *verbose*/*quiet*,
    and an optional file handler that always logs at DEBUG.

    Args:
        verbose: If True, set console log level to DEBUG.
        quiet: If True, set console log level to WARNING. Ignored if *verbose* is True.
        log_file: If provided, add a file handler at DEBUG level to this path.

    Returns:
        The configured root logger for tensorbench.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    # Remove any existing handlers to allow reconfiguration.
    logger.handlers.clear()

    console = logging.StreamHandler()
    if verbose:
        console.setLevel(logging.DEBUG)
    elif quiet:
        console.setLevel(logging.WARNING)
    else:
        console.setLevel(logging.INFO)
    console.setFormatter(logging.Formatter(_CONSOLE_FORMAT))
    logger.addHandler(console)

    # File handler (always DEBUG).
    if log_file is not None:
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(_DEFAULT_FORMAT))
        logger.addHandler(fh)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a named child logger under the tensorbench namespace.

    Args:
        name: The logger name (will be prefixed with ``tensorbench.``).

    Returns:
        A configured logger instance.
    """
    return logging.getLogger(f"{_LOGGER_NAME}.{name}")


# ---------------------------------------------------------------------------
# CI log grouping
# ---------------------------------------------------------------------------


def in_ci(environ: Mapping[str, str]) -> bool:
    """Return True when *environ* says we are running on a CI runner."""
    return "CI" in environ


def group(title: str, *, ci: bool) -> None:
    """Open a collapsible log group (CI) or print a plain heading."""
    if ci:
        click.echo(f"::group::{title}")
    else:
        click.echo(f"\n{title}")


def endgroup(*, ci: bool) -> None:
    """Close the group opened by :func:`group`."""
    if ci:
        click.echo("::endgroup::")


def ci_error(message: str, *, ci: bool) -> None:
    """Report an error as a CI annotation, or through the logger locally."""
    if ci:
        click.echo(f"::error ::{message}")
    else:
        logging.getLogger(_LOGGER_NAME).error("%s", message)
