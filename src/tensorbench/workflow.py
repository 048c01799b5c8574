"""Webhook notifications for CI-driven runs.

The CI job writes its inputs (at least ``pr_number``) to a JSON file named
by ``WEBHOOK_INPUTS_FILE``.  tensorbench echoes those inputs back to the
collector with the rendered results, signed like a GitHub webhook
delivery.  Nothing here is fatal: every failure is reported and the run
carries on.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import uuid
from pathlib import Path
from typing import Any

import click
import requests

from tensorbench.formatting import strip_ansi
from tensorbench.logging import ci_error
from tensorbench.runner.config import OrchestratorSettings

log = logging.getLogger("tensorbench")


def webhook_url(settings: OrchestratorSettings) -> str:
    return f"{settings.server_url}burn_bench/webhook/benchmark"


def load_inputs(inputs_file: Path, *, ci: bool = False) -> tuple[dict[str, Any], int] | None:
    """Return the inputs and their PR number, or None to skip the webhook."""
    try:
        data = json.loads(inputs_file.read_text(encoding="utf-8"))
    except OSError as exc:
        ci_error(f"❌ Cannot open inputs file: {exc}", ci=ci)
        return None
    except ValueError as exc:
        ci_error(f"❌ Error reading JSON: {exc}", ci=ci)
        return None

    pr_number = data.get("pr_number") if isinstance(data, dict) else None
    if not isinstance(pr_number, int) or isinstance(pr_number, bool):
        click.echo("ℹ️ No valid 'pr_number' found. Skipping webhook.")
        return None
    return data, pr_number


def clean_output(table: str, share_link: str | None) -> dict[str, str]:
    results = {"table": strip_ansi(table)}
    if share_link is not None:
        results["share_link"] = share_link
    return results


def build_payload(
    inputs: dict[str, Any],
    pr_number: int,
    results: dict[str, str],
    action: str,
) -> bytes:
    payload = dict(inputs)
    payload["results"] = results
    payload["action"] = action
    payload["pr_number"] = pr_number
    return json.dumps(payload).encode("utf-8")


def sign_payload(payload: bytes, secret: str) -> str:
    """Return the ``X-Hub-Signature-256`` value for *payload*."""
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def send_event(
    action: str,
    payload: bytes,
    settings: OrchestratorSettings,
    *,
    timeout: float = 30.0,
) -> bool:
    """POST a signed event.  Returns True when the collector accepted it."""
    if not settings.webhook_secret:
        ci_error("❌ Missing WEBHOOK_PAYLOAD_SECRET", ci=settings.ci)
        return False

    url = webhook_url(settings)
    headers = {
        "Content-Type": "application/json",
        "X-GitHub-Delivery": str(uuid.uuid4()),
        "X-Hub-Signature-256": sign_payload(payload, settings.webhook_secret),
    }
    try:
        resp = requests.post(url, data=payload, headers=headers, timeout=timeout)
    except requests.RequestException as exc:
        ci_error(f"❌ Error sending webhook: {exc}", ci=settings.ci)
        return False

    if not resp.ok:
        ci_error(
            f"❌ Webhook failed with status: {resp.status_code} ({resp.text})",
            ci=settings.ci,
        )
        return False

    click.echo(f"✅ Sent '{action}' webhook to server at '{url}'.")
    return True


def _deliver(
    action: str,
    table: str,
    share_link: str | None,
    settings: OrchestratorSettings,
) -> bool:
    if settings.webhook_inputs_file is None:
        return False
    loaded = load_inputs(settings.webhook_inputs_file, ci=settings.ci)
    if loaded is None:
        return False
    inputs, pr_number = loaded
    payload = build_payload(inputs, pr_number, clean_output(table, share_link), action)
    return send_event(action, payload, settings)


def send_started_event(settings: OrchestratorSettings) -> bool:
    """Tell the collector the run has begun."""
    return _deliver("started", "no results", "no share link", settings)


def send_output_results(
    table: str,
    share_link: str | None,
    settings: OrchestratorSettings,
) -> bool:
    """Send the final results table (and share link) to the collector."""
    return _deliver("complete", table, share_link, settings)
