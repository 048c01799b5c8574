"""Tests for tensorbench.runner.reports — result collection and the table."""

from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path

from bench_test_helpers import make_record, write_records

from tensorbench.bench.results import results_log_path
from tensorbench.formatting import strip_ansi
from tensorbench.runner.reports import BenchmarkCollection, FailedBenchmark


class TestFailedBenchmark(unittest.TestCase):
    def test_rerun_command(self) -> None:
        failed = FailedBenchmark("matmul", "cuda", "0.16.0")
        self.assertEqual(
            failed.rerun_command(),
            "tensorbench run --benches matmul --backends cuda --versions 0.16.0 --verbose",
        )

    def test_rerun_command_several_benches(self) -> None:
        failed = FailedBenchmark("matmul, unary", "wgpu")
        self.assertEqual(
            failed.rerun_command(),
            "tensorbench run --benches matmul unary --backends wgpu --verbose",
        )

    def test_hint(self) -> None:
        text = str(FailedBenchmark("matmul", "cuda"))
        self.assertTrue(text.startswith("Run the benchmark with verbose enabled"))


class TestBenchmarkCollection(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.cache_dir = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_create_discards_stale_log(self) -> None:
        write_records(self.cache_dir, [make_record()])
        collection = BenchmarkCollection.create(self.cache_dir)
        self.assertFalse(collection.results_log.exists())
        self.assertEqual(collection.load_records().records, [])

    def test_load_records_consumes_log(self) -> None:
        collection = BenchmarkCollection.create(self.cache_dir)
        records = [make_record("a", timestamp=1), make_record("b", timestamp=2)]
        write_records(self.cache_dir, records)

        collection.load_records()

        self.assertEqual([r.results.name for r in collection.records], ["a", "b"])
        self.assertFalse(results_log_path(self.cache_dir).exists())

    def test_load_skips_missing_and_corrupt(self) -> None:
        collection = BenchmarkCollection.create(self.cache_dir)
        write_records(self.cache_dir, [make_record("good")])
        broken = self.cache_dir / "broken.json"
        broken.write_text("{")
        with open(results_log_path(self.cache_dir), "a") as f:
            f.write(f"{self.cache_dir / 'gone.json'}\n\n{broken}\n")

        with self.assertLogs("tensorbench", level="WARNING") as logs:
            collection.load_records()

        self.assertEqual([r.results.name for r in collection.records], ["good"])
        self.assertEqual(len(logs.records), 2)

    def test_load_skips_mistyped_record(self) -> None:
        collection = BenchmarkCollection.create(self.cache_dir)
        good, bad = write_records(self.cache_dir, [make_record("good"), make_record("bad")])
        data = json.loads(bad.read_text())
        data["results"]["name"] = None
        bad.write_text(json.dumps(data))

        with self.assertLogs("tensorbench", level="WARNING") as logs:
            collection.load_records()

        self.assertEqual([r.results.name for r in collection.records], ["good"])
        self.assertIn("name must be a string", logs.output[0])
        self.assertIn("good", strip_ansi(collection.render()))

    def test_sorted_by_name_shape_median(self) -> None:
        collection = BenchmarkCollection(cache_dir=self.cache_dir)
        collection.records = [
            make_record("unary", [3.0]),
            make_record("matmul", [2.0], shapes=[[4, 4]]),
            make_record("matmul", [5.0], shapes=[[2, 2]]),
            make_record("matmul", [1.0], shapes=[[2, 2]]),
        ]
        ordered = [
            (r.results.name, r.results.computed.median) for r in collection.sorted_records()
        ]
        self.assertEqual(
            ordered, [("matmul", 1.0), ("matmul", 5.0), ("matmul", 2.0), ("unary", 3.0)]
        )

    def test_rows_separate_groups_and_list_failures_last(self) -> None:
        collection = BenchmarkCollection(cache_dir=self.cache_dir)
        collection.records = [
            make_record("matmul", [0.002], backend="cuda"),
            make_record("matmul", [0.001], backend="wgpu"),
            make_record("unary", [0.5]),
        ]
        collection.push_failed(FailedBenchmark("conv", "rocm", "0.16.0"))

        kinds = [kind for kind, _ in collection.table_rows()]
        self.assertEqual(kinds, ["ok", "ok", "separator", "ok", "failed"])

        first = collection.table_rows()[0][1]
        self.assertEqual(
            first, ["matmul", "main", "(2, 3)", "wgpu", "`wgpu`", "DefaultDevice", "1.000ms"]
        )

    def test_render(self) -> None:
        collection = BenchmarkCollection(cache_dir=self.cache_dir)
        collection.records = [make_record("matmul", [0.001])]
        collection.push_failed(FailedBenchmark("unary", "cuda"))

        lines = strip_ansi(collection.render()).splitlines()

        self.assertTrue(lines[0].startswith("| Benchmark"))
        self.assertIn("Library Version", lines[0])
        self.assertTrue(lines[1].startswith("|---"))
        self.assertIn("1.000ms", lines[2])
        self.assertIn("FAILED", lines[3])
        self.assertIn("tensorbench run --benches unary --backends cuda --verbose", lines[-1])

    def test_render_empty(self) -> None:
        lines = str(BenchmarkCollection(cache_dir=self.cache_dir)).splitlines()
        self.assertEqual(len(lines), 2)


if __name__ == "__main__":
    unittest.main()
