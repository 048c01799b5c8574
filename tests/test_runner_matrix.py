"""Tests for tensorbench.runner.matrix — the benchmark matrix orchestrator."""

from __future__ import annotations

import tempfile
import threading
import unittest
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

from bench_test_helpers import CRATE_MANIFEST, make_record, write_manifest

from tensorbench.bench.results import save_record
from tensorbench.runner.config import (
    ConfigError,
    ManifestError,
    OrchestratorSettings,
    PatchSettings,
    RunConfig,
    ToolNotFoundError,
)
from tensorbench.runner.matrix import (
    MatrixRunner,
    build_features,
    cargo_args,
    legacy_marker,
    required_features,
    resolve_version_alias,
    web_results_url,
)
from tensorbench.runner.processor import NiceProcessor, Profiling, SinkProcessor, VerboseProcessor
from tensorbench.runner.reports import FailedBenchmark


class FakeCargo:
    """Stands in for CargoRunner; records each cell and the manifest it saw."""

    def __init__(
        self,
        manifest: Path,
        cache_dir: Path,
        *,
        exit_codes: dict[tuple[str, str], int] | None = None,
        error: Exception | None = None,
    ) -> None:
        self.manifest = manifest
        self.cache_dir = cache_dir
        self.exit_codes = exit_codes or {}
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def __call__(
        self,
        params: list[str],
        envs: dict[str, str],
        processor: Any,
        profiling: Profiling,
        *,
        cwd: Path,
        target_dir: str,
    ) -> FakeCargo:
        self.calls.append(
            {
                "params": params,
                "envs": envs,
                "processor": processor,
                "profiling": profiling,
                "cwd": cwd,
                "target_dir": target_dir,
                "manifest": self.manifest.read_text(),
            }
        )
        return self

    def run(self) -> int:
        if self.error is not None:
            raise self.error
        call = self.calls[-1]
        params = call["params"]
        features = params[params.index("--features") + 1]
        backend = features.split(",")[0].split("/")[1]
        version = call["envs"]["TENSORBENCH_VERSION"]
        code = self.exit_codes.get((version, backend), 0)
        if code == 0:
            record = make_record(
                "matmul", [0.001], backend=backend, version=version, timestamp=len(self.calls)
            )
            save_record(record, self.cache_dir)
        return code


class MatrixTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.crate_dir = self.root / "crates" / "backend-comparison"
        self.manifest = write_manifest(self.crate_dir, CRATE_MANIFEST)
        self.cache_dir = self.root / "cache"
        self.settings = OrchestratorSettings(cache_dir=self.cache_dir)
        self.bar = MagicMock()
        self.bar.lock = threading.RLock()
        echo = patch("tensorbench.runner.matrix.click.echo")
        self.mock_echo = echo.start()
        self.addCleanup(echo.stop)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _config(self, **kwargs: Any) -> RunConfig:
        kwargs.setdefault("backends", ["cuda", "wgpu"])
        kwargs.setdefault("benches", ["matmul"])
        kwargs.setdefault("versions", ["main", "0.16.0"])
        return RunConfig(root=self.root, **kwargs)

    def _runner(self, config: RunConfig, fake: FakeCargo, **kwargs: Any) -> MatrixRunner:
        return MatrixRunner(
            config,
            self.settings,
            patch_settings=PatchSettings(settle_seconds=0),
            runner_factory=fake,
            progress_bar_factory=lambda total: self.bar,
            **kwargs,
        )

    def _fake(self, **kwargs: Any) -> FakeCargo:
        return FakeCargo(self.manifest, self.cache_dir, **kwargs)


class TestMatrixRunner(MatrixTestCase):
    def test_runs_every_cell_in_order(self) -> None:
        fake = self._fake()
        result = self._runner(self._config(dtypes=["f32", "f16"]), fake).run()

        cells = [(o.version, o.backend, o.dtype) for o in result.outcomes]
        self.assertEqual(
            cells,
            [
                ("main", "cuda", "f32"),
                ("main", "cuda", "f16"),
                ("main", "wgpu", "f32"),
                ("main", "wgpu", "f16"),
                ("0.16.0", "cuda", "f32"),
                ("0.16.0", "cuda", "f16"),
                ("0.16.0", "wgpu", "f32"),
                ("0.16.0", "wgpu", "f16"),
            ],
        )
        params = fake.calls[0]["params"]
        features = params[params.index("--features") + 1]
        self.assertEqual(features, "backend-comparison/cuda,backend-comparison/f32")
        self.assertEqual(len(fake.calls), 8)
        self.assertEqual(fake.calls[0]["cwd"], self.root)
        self.assertEqual(
            fake.calls[0]["envs"],
            {"TENSORBENCH_VERSION": "main", "TENSORBENCH_FEATURES": features},
        )
        self.assertEqual(result.failed_count, 0)
        self.assertEqual(len(result.collection.records), 8)
        self.bar.finish.assert_called_once()

    def test_manifest_patched_per_cell_and_restored(self) -> None:
        fake = self._fake()
        self._runner(self._config(backends=["cuda"]), fake).run()

        main_manifest, release_manifest = (c["manifest"] for c in fake.calls)
        self.assertIn('git = "https://github.com/tracel-ai/burn", branch = "main"', main_manifest)
        self.assertIn('cuda = ["burn/cuda"]', main_manifest)
        self.assertIn('burn = { version = "=0.16.0", default-features = false }', release_manifest)
        self.assertIn('cuda = ["burn/cuda-jit"]', release_manifest)
        self.assertEqual(self.manifest.read_text(), CRATE_MANIFEST)

    def test_legacy_feature_for_old_release(self) -> None:
        fake = self._fake()
        self._runner(self._config(backends=["cuda"]), fake).run()

        main_params, release_params = (c["params"] for c in fake.calls)
        features = "backend-comparison/cuda,backend-comparison/f32"
        self.assertEqual(
            main_params,
            ["--bench", "matmul", "--features", features, "--target-dir", "target/benchmarks"],
        )
        self.assertIn("backend-comparison/legacy-v16", release_params[3])

    def test_failed_cell_recorded(self) -> None:
        fake = self._fake(exit_codes={("0.16.0", "wgpu"): 101})
        result = self._runner(self._config(), fake).run()

        self.assertEqual(result.failed_count, 1)
        self.assertEqual(
            result.collection.failed, [FailedBenchmark("matmul", "wgpu", "0.16.0")]
        )
        self.assertEqual(len(result.collection.records), 3)
        self.assertEqual(self.bar.succeeded_inc.call_count, 3)
        self.assertEqual(self.bar.failed_inc.call_count, 1)
        self.assertIn("FAILED", result.table)
        self.assertIn("--versions 0.16.0", result.table)

    def test_invalid_config_runs_nothing(self) -> None:
        fake = self._fake()
        with self.assertRaises(ConfigError):
            self._runner(self._config(backends=["tpu"]), fake).run()
        self.assertEqual(fake.calls, [])

    def test_runner_error_restores_manifest(self) -> None:
        fake = self._fake(error=ToolNotFoundError("cargo"))
        with self.assertRaises(ToolNotFoundError):
            self._runner(self._config(), fake).run()
        self.assertEqual(self.manifest.read_text(), CRATE_MANIFEST)
        self.bar.finish.assert_called_once()

    def test_processor_selection(self) -> None:
        fake = self._fake()
        self._runner(self._config(backends=["cuda"], versions=["main"]), fake).run()
        self.assertIsInstance(fake.calls[0]["processor"], NiceProcessor)

        fake = self._fake()
        self._runner(self._config(backends=["cuda"], versions=["main"]), fake, quiet=True).run()
        self.assertIsInstance(fake.calls[0]["processor"], SinkProcessor)

        fake = self._fake()
        factory = MagicMock()
        runner = MatrixRunner(
            self._config(backends=["cuda"], versions=["main"], verbose=True),
            self.settings,
            patch_settings=PatchSettings(settle_seconds=0),
            runner_factory=fake,
            progress_bar_factory=factory,
        )
        runner.run()
        self.assertIsInstance(fake.calls[0]["processor"], VerboseProcessor)
        factory.assert_not_called()

    def test_required_features_added(self) -> None:
        fake = self._fake()
        config = self._config(backends=["cuda"], versions=["main"], benches=["remote"])
        self._runner(config, fake).run()
        features = fake.calls[0]["params"][3]
        self.assertEqual(
            features,
            "backend-comparison/cuda,backend-comparison/f32,backend-comparison/remote",
        )

    @patch("tensorbench.runner.matrix.get_username")
    def test_sharing(self, mock_username: MagicMock) -> None:
        mock_username.return_value = MagicMock(nickname="octocat")
        fake = self._fake()
        result = self._runner(
            self._config(backends=["cuda"], versions=["main"]), fake, token="ghu_t"
        ).run()

        params = fake.calls[0]["params"]
        self.assertEqual(
            params[-5:],
            ["--", "--sharing-url", self.settings.sharing_url, "--sharing-token", "ghu_t"],
        )
        assert result.share_link is not None
        self.assertIn("user=octocat", result.share_link)
        self.assertIn("Browse results at", self.mock_echo.call_args[0][0])

    @patch("tensorbench.runner.matrix.get_username")
    def test_profiling_never_shares(self, mock_username: MagicMock) -> None:
        mock_username.return_value = MagicMock(nickname="octocat")
        fake = self._fake()
        config = self._config(backends=["cuda"], versions=["main"], profile=True)
        self._runner(config, fake, token="ghu_t").run()

        call = fake.calls[0]
        self.assertNotIn("--sharing-token", call["params"])
        self.assertTrue(call["profiling"].active)

    @patch("tensorbench.runner.matrix.send_output_results")
    @patch("tensorbench.runner.matrix.send_started_event")
    def test_webhooks(self, mock_started: MagicMock, mock_complete: MagicMock) -> None:
        self.settings.webhook_inputs_file = self.root / "inputs.json"
        self.settings.emit_started_webhook = True
        config = self._config(backends=["cuda"], versions=["main"])
        result = self._runner(config, self._fake()).run()

        mock_started.assert_called_once_with(self.settings)
        mock_complete.assert_called_once_with(result.table, None, self.settings)

    @patch("tensorbench.runner.matrix.send_output_results")
    @patch("tensorbench.runner.matrix.send_started_event")
    def test_no_webhooks_without_inputs(
        self, mock_started: MagicMock, mock_complete: MagicMock
    ) -> None:
        self.settings.emit_started_webhook = True
        self._runner(self._config(backends=["cuda"], versions=["main"]), self._fake()).run()
        mock_started.assert_not_called()
        mock_complete.assert_not_called()


class TestCellHelpers(unittest.TestCase):
    def test_version_alias(self) -> None:
        self.assertEqual(resolve_version_alias("PR#123_a1b2c3d"), "a1b2c3d")
        self.assertEqual(resolve_version_alias("PR#123"), "PR#123")
        self.assertEqual(resolve_version_alias("main"), "main")

    def test_legacy_marker(self) -> None:
        self.assertEqual(legacy_marker("0.16.1"), "legacy-v16")
        self.assertEqual(legacy_marker("0.17.0-pre.1"), "legacy-v16")
        self.assertEqual(legacy_marker("0.17.1"), "legacy-v17")
        self.assertIsNone(legacy_marker("0.18.0"))
        self.assertIsNone(legacy_marker("main"))

    def test_build_features_deduplicates(self) -> None:
        self.assertEqual(
            build_features("c", "cuda", "f16", "0.17.0", ["remote", "cuda"]),
            "c/cuda,c/f16,c/legacy-v17,c/remote",
        )

    def test_cargo_args_all_benches(self) -> None:
        self.assertEqual(
            cargo_args(["all"], "c/cuda,c/f32", "target/benchmarks"),
            ["--benches", "--features", "c/cuda,c/f32", "--target-dir", "target/benchmarks"],
        )

    def test_cargo_args_needs_url_and_token(self) -> None:
        args = cargo_args(["a", "b"], "f", "t", sharing_url=None, token="ghu_t")
        self.assertEqual(
            args, ["--bench", "a", "--bench", "b", "--features", "f", "--target-dir", "t"]
        )

    def test_required_features(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            crate_dir = Path(tmp)
            write_manifest(crate_dir, CRATE_MANIFEST)
            self.assertEqual(required_features(crate_dir, "remote"), ["remote"])
            self.assertEqual(required_features(crate_dir, "matmul"), [])
            self.assertEqual(required_features(crate_dir, "unknown"), [])

    def test_required_features_bad_manifest(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            crate_dir = Path(tmp)
            write_manifest(crate_dir, "[[bench]\n")
            with self.assertRaises(ManifestError):
                required_features(crate_dir, "remote")

    def test_web_results_url(self) -> None:
        url = web_results_url("https://burn.dev/", "octocat", "Linux 6.1", ["0.16.0", "main"])
        self.assertEqual(
            url,
            "https://burn.dev/benchmarks/community-benchmarks?user=octocat"
            "&sysHardware=Any&os=Linux%206.1&burnVersions=0.16.0%2Cmain",
        )


if __name__ == "__main__":
    unittest.main()
