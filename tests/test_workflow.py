"""Tests for tensorbench.workflow — CI webhook notifications."""

from __future__ import annotations

import hashlib
import hmac
import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

import requests
from bench_test_helpers import write_inputs

from tensorbench.runner.config import OrchestratorSettings
from tensorbench.workflow import (
    build_payload,
    clean_output,
    load_inputs,
    send_event,
    send_output_results,
    send_started_event,
    sign_payload,
    webhook_url,
)


class TestPayload(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self._tmp.name)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_load_inputs(self) -> None:
        path = write_inputs(self.dir / "inputs.json", {"pr_number": 42, "sha": "abc"})
        self.assertEqual(load_inputs(path), ({"pr_number": 42, "sha": "abc"}, 42))

    @patch("tensorbench.workflow.click.echo")
    def test_missing_pr_number_skips(self, mock_echo: MagicMock) -> None:
        for data in ({"sha": "abc"}, {"pr_number": "42"}, {"pr_number": True}):
            with self.subTest(data=data):
                path = write_inputs(self.dir / "inputs.json", data)
                self.assertIsNone(load_inputs(path))
        self.assertIn("Skipping webhook", mock_echo.call_args[0][0])

    def test_unreadable_inputs(self) -> None:
        with self.assertLogs("tensorbench", level="ERROR"):
            self.assertIsNone(load_inputs(self.dir / "missing.json"))
        bad = self.dir / "bad.json"
        bad.write_text("{")
        with self.assertLogs("tensorbench", level="ERROR"):
            self.assertIsNone(load_inputs(bad))

    def test_clean_output_strips_colour(self) -> None:
        self.assertEqual(
            clean_output("\x1b[32m| a |\x1b[0m", "https://share"),
            {"table": "| a |", "share_link": "https://share"},
        )
        self.assertEqual(clean_output("t", None), {"table": "t"})

    def test_build_payload_keeps_inputs(self) -> None:
        payload = json.loads(build_payload({"pr_number": 7, "sha": "abc"}, 7, {"table": "t"}, "x"))
        self.assertEqual(
            payload, {"pr_number": 7, "sha": "abc", "results": {"table": "t"}, "action": "x"}
        )

    def test_signature(self) -> None:
        expected = hmac.new(b"key", b"body", hashlib.sha256).hexdigest()
        self.assertEqual(sign_payload(b"body", "key"), f"sha256={expected}")


class TestSendEvent(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.dir = Path(self._tmp.name)
        self.settings = OrchestratorSettings(
            server_url="https://collector/v1/",
            cache_dir=self.dir,
            webhook_secret="s3cret",
            webhook_inputs_file=write_inputs(self.dir / "inputs.json", {"pr_number": 9}),
        )

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_url(self) -> None:
        self.assertEqual(
            webhook_url(self.settings), "https://collector/v1/burn_bench/webhook/benchmark"
        )

    @patch("tensorbench.workflow.click.echo")
    @patch("tensorbench.workflow.requests.post")
    def test_signed_delivery(self, mock_post: MagicMock, _mock_echo: MagicMock) -> None:
        mock_post.return_value = MagicMock(ok=True, status_code=200)
        self.assertTrue(send_event("complete", b"{}", self.settings))

        kwargs = mock_post.call_args[1]
        self.assertEqual(kwargs["data"], b"{}")
        self.assertEqual(kwargs["headers"]["X-Hub-Signature-256"], sign_payload(b"{}", "s3cret"))
        self.assertEqual(len(kwargs["headers"]["X-GitHub-Delivery"]), 36)

    @patch("tensorbench.workflow.requests.post")
    def test_missing_secret(self, mock_post: MagicMock) -> None:
        self.settings.webhook_secret = None
        with self.assertLogs("tensorbench", level="ERROR"):
            self.assertFalse(send_event("complete", b"{}", self.settings))
        mock_post.assert_not_called()

    @patch("tensorbench.workflow.click.echo")
    @patch("tensorbench.workflow.requests.post")
    def test_missing_secret_in_ci(self, mock_post: MagicMock, mock_echo: MagicMock) -> None:
        self.settings.webhook_secret = None
        self.settings.ci = True
        self.assertFalse(send_event("complete", b"{}", self.settings))
        mock_echo.assert_called_once_with("::error ::❌ Missing WEBHOOK_PAYLOAD_SECRET")

    @patch("tensorbench.workflow.requests.post")
    def test_rejected(self, mock_post: MagicMock) -> None:
        mock_post.return_value = MagicMock(ok=False, status_code=500, text="boom")
        with self.assertLogs("tensorbench", level="ERROR"):
            self.assertFalse(send_event("complete", b"{}", self.settings))

    @patch("tensorbench.workflow.requests.post", side_effect=requests.Timeout)
    def test_network_error(self, _mock_post: MagicMock) -> None:
        with self.assertLogs("tensorbench", level="ERROR"):
            self.assertFalse(send_event("complete", b"{}", self.settings))

    @patch("tensorbench.workflow.send_event", return_value=True)
    def test_started_event(self, mock_send: MagicMock) -> None:
        self.assertTrue(send_started_event(self.settings))
        action, payload, _ = mock_send.call_args[0]
        self.assertEqual(action, "started")
        self.assertEqual(
            json.loads(payload)["results"],
            {"table": "no results", "share_link": "no share link"},
        )

    @patch("tensorbench.workflow.send_event", return_value=True)
    def test_output_results(self, mock_send: MagicMock) -> None:
        send_output_results("\x1b[31m| x |\x1b[0m", None, self.settings)
        action, payload, _ = mock_send.call_args[0]
        data = json.loads(payload)
        self.assertEqual(action, "complete")
        self.assertEqual(data["results"], {"table": "| x |"})
        self.assertEqual(data["pr_number"], 9)

    @patch("tensorbench.workflow.send_event")
    def test_no_inputs_file(self, mock_send: MagicMock) -> None:
        self.settings.webhook_inputs_file = None
        self.assertFalse(send_output_results("t", None, self.settings))
        mock_send.assert_not_called()


if __name__ == "__main__":
    unittest.main()
