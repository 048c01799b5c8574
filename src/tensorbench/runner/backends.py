"""Catalogue of compute backends and numeric datatypes.

Each name doubles as the cargo feature of the bench crate that selects it.
"""

from __future__ import annotations

from collections.abc import Iterable

ALL = "all"

BACKENDS: tuple[str, ...] = (
    "candle-cpu",
    "candle-cuda",
    "candle-metal",
    "cuda",
    "cuda-fusion",
    "cpu",
    "cpu-fusion",
    "rocm",
    "rocm-fusion",
    "ndarray",
    "ndarray-simd",
    "ndarray-blas-accelerate",
    "ndarray-blas-netlib",
    "ndarray-blas-openblas",
    "tch-cpu",
    "tch-cuda",
    "tch-metal",
    "wgpu",
    "wgpu-fusion",
    "vulkan",
    "vulkan-fusion",
    "metal",
    "metal-fusion",
)

DTYPES: tuple[str, ...] = ("f32", "f16", "flex32", "bf16")


def split_values(values: Iterable[str]) -> list[str]:
    """Flatten repeated options that may hold space/comma separated lists.

    ``("cuda wgpu", "ndarray,vulkan")`` → ``["cuda", "wgpu", "ndarray", "vulkan"]``.
    Order is kept and duplicates are dropped.
    """
    seen: set[str] = set()
    out: list[str] = []
    for value in values:
        for item in value.replace(",", " ").split():
            if item not in seen:
                seen.add(item)
                out.append(item)
    return out


def expand_backends(names: Iterable[str]) -> list[str]:
    """Replace ``all`` with every known backend."""
    names = list(names)
    if ALL in names:
        return list(BACKENDS)
    return names


def unknown_backends(names: Iterable[str]) -> list[str]:
    return [name for name in names if name != ALL and name not in BACKENDS]


def unknown_dtypes(names: Iterable[str]) -> list[str]:
    return [name for name in names if name not in DTYPES]
