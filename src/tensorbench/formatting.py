"""Shared text formatting helpers for tensorbench.

Provides functions for formatting durations, tensor shapes and aligned text
tables used by the report and the CLI.
"""

from __future__ import annotations

import math
import re
from collections.abc import Sequence

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*m")


def format_time(seconds: float, precision: int = 3) -> str:
    """Format a duration with adaptive units.

    Examples: ``'850.000ns'``, ``'12.345µs'``, ``'1.234ms'``, ``'2.500s'``.
    """
    if math.isnan(seconds):
        return "N/A"
    if seconds < 1e-6:
        return f"{seconds * 1e9:.{precision}f}ns"
    if seconds < 1e-3:
        return f"{seconds * 1e6:.{precision}f}µs"
    if seconds < 1:
        return f"{seconds * 1e3:.{precision}f}ms"
    return f"{seconds:.{precision}f}s"


def format_shapes(shapes: Sequence[Sequence[int]]) -> str:
    """Format a list of tensor shapes.

    ``[]`` gives ``'()'``, a single shape gives ``'(2, 3)'`` and several
    shapes are bracketed: ``'[(2, 3)(3, 4)]'``.
    """
    if not shapes:
        return "()"
    body = "".join("(" + ", ".join(str(dim) for dim in shape) + ")" for shape in shapes)
    if len(shapes) > 1:
        return f"[{body}]"
    return body


def strip_ansi(text: str) -> str:
    """Remove ANSI colour escape sequences from *text*."""
    return _ANSI_RE.sub("", text)


def format_table(
    headers: list[str],
    rows: list[list[str]],
    *,
    alignments: list[str] | None = None,
    max_col_width: dict[int, int] | None = None,
    indent: int = 0,
    rule: bool = True,
) -> list[str]:
    """Format a list of rows as aligned, pipe-delimited text table lines.

    Auto-calculates column widths from content. Truncates columns that
    exceed *max_col_width* (with ``'...'`` suffix). Right-aligns columns
    marked ``'r'`` in *alignments*.

    Args:
        headers: Column header strings.
        rows: List of rows, each a list of cell strings.
        alignments: Per-column alignment: ``'l'``, ``'r'``, or ``'c'``.
        max_col_width: Column index to max width mapping.
        indent: Number of leading spaces per line.
        rule: Whether to emit a ``|---|`` rule under the header.

    Returns:
        The header line, the optional rule, then one line per row.  Lines are
        returned separately so callers can style individual rows.
    """
    if not headers:
        return []

    ncols = len(headers)
    if alignments is None:
        alignments = ["l"] * ncols
    alignments = list(alignments)
    while len(alignments) < ncols:
        alignments.append("l")

    max_widths = max_col_width or {}

    def _trunc(text: str, max_w: int) -> str:
        if len(text) <= max_w:
            return text
        return text[: max_w - 3] + "..."

    proc_headers = list(headers)
    proc_rows: list[list[str]] = []
    for row in rows:
        padded = list(row) + [""] * (ncols - len(row))
        proc_rows.append(padded[:ncols])

    for ci, max_w in max_widths.items():
        if ci < ncols:
            proc_headers[ci] = _trunc(proc_headers[ci], max_w)
            for row in proc_rows:
                row[ci] = _trunc(row[ci], max_w)

    widths = [len(h) for h in proc_headers]
    for row in proc_rows:
        for ci, cell in enumerate(row):
            widths[ci] = max(widths[ci], len(cell))

    prefix = " " * indent

    def _format_cell(text: str, width: int, align: str) -> str:
        if align == "r":
            return text.rjust(width)
        if align == "c":
            return text.center(width)
        return text.ljust(width)

    def _join(cells: list[str]) -> str:
        return prefix + "| " + " | ".join(cells) + " |"

    lines = [
        _join([_format_cell(proc_headers[i], widths[i], alignments[i]) for i in range(ncols)])
    ]
    if rule:
        lines.append(prefix + "|" + "|".join("-" * (w + 2) for w in widths) + "|")
    for row in proc_rows:
        lines.append(_join([_format_cell(row[i], widths[i], alignments[i]) for i in range(ncols)]))
    return lines
