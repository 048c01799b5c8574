"""Temporary rewriting of the bench crate's dependency on the tensor library.

A version string is classified into a :class:`VersionSpec`, then
:func:`patch` rewrites the dependency tables of the crate manifest (or of
the workspace manifest, when the crate inherits the dependency from the
workspace) and returns a :class:`ManifestGuard` holding the original bytes.

Usage::

    with patch(classify("0.16.0"), crate_dir) as guard:
        run_the_benchmarks()
    # manifests are byte-identical to what they were before

At most one guard may be outstanding per manifest path in this process.
A process killed while a guard is outstanding leaves the manifest patched.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Union

from tensorbench.runner.config import ManifestError, PatchInProgressError, PatchSettings

log = logging.getLogger("tensorbench")

_COMMIT_RE = re.compile(r"^[0-9a-f]{7,40}$")
_SEMVER_RE = re.compile(
    r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)"
    r"(?:-([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?"
    r"(?:\+([0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)


# ---------------------------------------------------------------------------
# Semantic versions
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SemVer:
    """A ``MAJOR.MINOR.PATCH[-pre][+build]`` version.

    Ordering follows semver precedence: build metadata is ignored and a
    pre-release sorts before its release.
    """

    major: int
    minor: int
    patch: int
    pre: tuple[str, ...] = ()
    build: tuple[str, ...] = ()

    @classmethod
    def parse(cls, text: str) -> SemVer | None:
        m = _SEMVER_RE.match(text)
        if m is None:
            return None
        pre = tuple(m.group(4).split(".")) if m.group(4) else ()
        build = tuple(m.group(5).split(".")) if m.group(5) else ()
        return cls(int(m.group(1)), int(m.group(2)), int(m.group(3)), pre, build)

    def _key(self) -> tuple:
        # A release (no pre-release) ranks above every pre-release.
        pre_key: tuple = (1,) if not self.pre else (0,) + tuple(
            (0, int(p), "") if p.isdigit() else (1, 0, p) for p in self.pre
        )
        return (self.major, self.minor, self.patch, pre_key)

    def __lt__(self, other: SemVer) -> bool:
        return self._key() < other._key()

    def __le__(self, other: SemVer) -> bool:
        return self._key() <= other._key()

    def __str__(self) -> str:
        text = f"{self.major}.{self.minor}.{self.patch}"
        if self.pre:
            text += "-" + ".".join(self.pre)
        if self.build:
            text += "+" + ".".join(self.build)
        return text


V0_16_1 = SemVer(0, 16, 1)
V0_17_0 = SemVer(0, 17, 0)


# ---------------------------------------------------------------------------
# VersionSpec
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Local:
    """Use the local checkout of the library."""


@dataclass(frozen=True)
class Released:
    """Use a version published on the registry."""

    version: SemVer


@dataclass(frozen=True)
class GitRef:
    """Use a revision or branch of the library's git repository."""

    kind: str  # "rev" or "branch"
    ref: str


VersionSpec = Union[Local, Released, GitRef]


def is_commit_hash(reference: str) -> bool:
    return _COMMIT_RE.match(reference) is not None


def classify(text: str) -> VersionSpec:
    """Classify a version string.

    ``"local"`` is the local checkout, a valid semver is a released version,
    7 to 40 lowercase hex digits are a commit and anything else is taken to
    be a branch name.
    """
    if text == "local":
        return Local()
    version = SemVer.parse(text)
    if version is not None:
        return Released(version)
    if is_commit_hash(text):
        return GitRef("rev", text)
    return GitRef("branch", text)


# ---------------------------------------------------------------------------
# Text rewriting
# ---------------------------------------------------------------------------

_LEGACY_V17_REPLACEMENTS = (
    ('cuda = ["burn/cuda"]', 'cuda = ["burn/cuda-jit"]'),
    ('rocm = ["burn/rocm"]', 'rocm = ["burn/hip-jit"]'),
    ('ndarray-simd = ["ndarray", "burn/simd"]', 'ndarray-simd = ["ndarray"]'),
    (
        'vulkan = ["burn/vulkan", "burn/autotune"]',
        'vulkan = ["burn/wgpu-spirv", "burn/autotune"]',
    ),
    (
        'metal = ["burn/vulkan", "burn/autotune"]',
        'metal = ["burn/wgpu", "burn/autotune"]',
    ),
    ('ndarray-simd = ["burn/ndarray", "burn/simd"]', 'ndarray-simd = ["burn/ndarray"]'),
    (
        'candle-metal = ["burn/candle", "burn/candle-metal"]',
        'candle-metal = ["burn/candle", "burn/metal"]',
    ),
    # rand must match the library's own version (binary and data benches).
    ('rand = { version = "0.9.0" }', 'rand = { version = "0.8.5" }'),
)

_BINCODE_PIN = 'bincode = "=2.0.0-rc.3"'
_BINCODE_DEPS = '[dependencies]\nbincode = "=2.0.0-rc.3"\nbincode_derive = "=2.0.0-rc.3"'


def translate_feature_flags(version: SemVer, text: str) -> str:
    """Rewrite backend feature aliases for releases that predate them.

    Only versions before 0.17.0 are touched.  Applying the translation to
    its own output changes nothing.
    """
    if not version < V0_17_0:
        return text

    for old, new in _LEGACY_V17_REPLACEMENTS:
        text = text.replace(old, new)

    if version < V0_16_1 and _BINCODE_PIN not in text:
        text = text.replace("[dependencies]", _BINCODE_DEPS)
    return text


def _table_re(name: str) -> re.Pattern[str]:
    # [^}] also matches newlines, so multi-line inline tables are replaced whole.
    return re.compile(rf"(?m)^{re.escape(name)} = \{{[^}}]*\}}")


def replace_dependency_tables(
    text: str,
    names: tuple[str, ...],
    make_table: Callable[[str], str],
) -> str:
    """Replace ``name = { ... }`` for each of *names* with ``make_table(name)``."""
    for name in names:
        replacement = make_table(name)
        text = _table_re(name).sub(lambda _m, r=replacement: r, text)
    return text


def uses_workspace_dependency(manifest_text: str, library_name: str) -> bool:
    """True when the crate inherits *library_name* from the workspace."""
    return (
        f'{library_name} = "workspace"' in manifest_text
        or f"{library_name} = {{ workspace = true" in manifest_text
    )


# ---------------------------------------------------------------------------
# ManifestGuard
# ---------------------------------------------------------------------------

_active_lock = threading.Lock()
_active_paths: set[Path] = set()


def _claim(paths: list[Path]) -> None:
    with _active_lock:
        busy = [p for p in paths if p in _active_paths]
        if busy:
            raise PatchInProgressError(
                f"Manifest already patched: {', '.join(str(p) for p in busy)}"
            )
        _active_paths.update(paths)


def _release(paths: list[Path]) -> None:
    with _active_lock:
        _active_paths.difference_update(paths)


@dataclass
class _Original:
    path: Path
    content: bytes


@dataclass
class ManifestGuard:
    """Holds the original bytes of patched manifests until restored.

    Restoring truncates each file and writes the captured bytes back
    verbatim, then waits *settle_seconds* so file watchers and the build
    tool observe the change.
    """

    originals: list[_Original] = field(default_factory=list)
    settle_seconds: float = 0.2
    restored: bool = False

    @property
    def paths(self) -> list[Path]:
        return [o.path for o in self.originals]

    def restore(self) -> None:
        """Write the original bytes back.  Safe to call more than once."""
        if self.restored:
            return
        self.restored = True
        first_error: OSError | None = None
        for original in self.originals:
            try:
                with open(original.path, "r+b") as f:
                    f.seek(0)
                    f.truncate()
                    f.write(original.content)
            except OSError as exc:
                log.error("Could not reset manifest %s: %s", original.path, exc)
                if first_error is None:
                    first_error = exc
            else:
                log.info("Reset original manifest %s", original.path)
        _release(self.paths)
        if first_error is not None:
            raise first_error
        if self.originals and self.settle_seconds > 0:
            time.sleep(self.settle_seconds)

    def __enter__(self) -> ManifestGuard:
        return self

    def __exit__(self, *exc: object) -> None:
        self.restore()

    def __del__(self) -> None:
        if not self.restored:
            try:
                self.restore()
            except OSError:
                log.error("Could not restore %s", ", ".join(str(p) for p in self.paths))


# ---------------------------------------------------------------------------
# patch
# ---------------------------------------------------------------------------


def _read(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except OSError as exc:
        raise ManifestError(f"Cannot read manifest {path}: {exc}") from exc


def _decode(path: Path, content: bytes) -> str:
    try:
        return content.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ManifestError(f"Manifest {path} is not valid UTF-8: {exc}") from exc


def _git_table(settings: PatchSettings, spec: GitRef) -> Callable[[str], str]:
    def make(name: str) -> str:
        return (
            f'{name} = {{ git = "{settings.repo_url}", {spec.kind} = "{spec.ref}", '
            f"default-features = false }}"
        )

    return make


def _local_table(library_dir: str) -> Callable[[str], str]:
    def make(name: str) -> str:
        return f'{name} = {{ path = "{library_dir}crates/{name}", default-features = false }}'

    return make


def _released_table(version: SemVer) -> Callable[[str], str]:
    def make(name: str) -> str:
        return f'{name} = {{ version = "={version}", default-features = false }}'

    return make


def plan_updates(
    spec: VersionSpec,
    crate_text: str,
    workspace_text: str | None,
    settings: PatchSettings,
) -> tuple[str | None, str | None]:
    """Compute the new (crate, workspace) manifest texts.

    ``None`` means the manifest is left untouched.  Pure: no file access.
    """
    names = settings.dependency_names

    if isinstance(spec, Released):
        make = _released_table(spec.version)
        if workspace_text is not None:
            return (
                translate_feature_flags(spec.version, crate_text),
                replace_dependency_tables(workspace_text, names, make),
            )
        crate_text = replace_dependency_tables(crate_text, names, make)
        return translate_feature_flags(spec.version, crate_text), None

    if isinstance(spec, GitRef):
        make = _git_table(settings, spec)
    else:
        library_dir = settings.library_dir
        if workspace_text is None:
            library_dir = "../" + library_dir
        make = _local_table(library_dir)

    if workspace_text is not None:
        return None, replace_dependency_tables(workspace_text, names, make)
    return replace_dependency_tables(crate_text, names, make), None


def _describe(spec: VersionSpec) -> str:
    if isinstance(spec, Released):
        return f"version {spec.version}"
    if isinstance(spec, GitRef):
        return f'git {spec.kind} = "{spec.ref}"'
    return "local checkout"


def patch(
    spec: VersionSpec,
    crate_dir: Path,
    *,
    workspace_root: Path = Path("."),
    settings: PatchSettings | None = None,
) -> ManifestGuard:
    """Point the crate at *spec* and return the guard that undoes it.

    Raises:
        ManifestError: a manifest cannot be read or written.
        PatchInProgressError: a manifest already has an outstanding guard.
    """
    settings = settings or PatchSettings()
    crate_path = (Path(crate_dir) / "Cargo.toml").resolve()
    crate_bytes = _read(crate_path)
    crate_text = _decode(crate_path, crate_bytes)

    workspace_path: Path | None = None
    workspace_bytes: bytes | None = None
    workspace_text: str | None = None
    if uses_workspace_dependency(crate_text, settings.library_name):
        workspace_path = (Path(workspace_root) / "Cargo.toml").resolve()
        workspace_bytes = _read(workspace_path)
        workspace_text = _decode(workspace_path, workspace_bytes)

    log.info("Applying %s", _describe(spec))
    new_crate, new_workspace = plan_updates(spec, crate_text, workspace_text, settings)

    updates: list[tuple[Path, bytes, str]] = []
    if new_crate is not None:
        updates.append((crate_path, crate_bytes, new_crate))
    if new_workspace is not None:
        assert workspace_path is not None and workspace_bytes is not None
        updates.append((workspace_path, workspace_bytes, new_workspace))

    _claim([path for path, _, _ in updates])
    guard = ManifestGuard(
        originals=[_Original(path, original) for path, original, _ in updates],
        settle_seconds=settings.settle_seconds,
    )

    try:
        for path, _, text in updates:
            path.write_bytes(text.encode("utf-8"))
    except OSError as exc:
        guard.restore()
        raise ManifestError(f"Cannot write manifest: {exc}") from exc

    return guard
