"""Access tokens for sharing results with the benchmark collector.

Resolution order:

1. ``GITHUB_BOT_TOKEN`` — used as is, never refreshed.
2. The cached tokens in ``<cache>/token.json``, verified against the GitHub
   user endpoint and refreshed through the collector when they have expired.

Tokens are obtained from the collector's GitHub application outside of
tensorbench; without a bot token or a cache file there is no token.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click
import requests

from tensorbench import __version__
from tensorbench.bench.results import authorization_header
from tensorbench.runner.config import AuthError, OrchestratorSettings

log = logging.getLogger("tensorbench")

_USER_AGENT = f"tensorbench/{__version__}"
GITHUB_USER_URL = "https://api.github.com/user"
GITHUB_API_VERSION = "2022-11-28"
TOKEN_FILE_NAME = "token.json"


@dataclass
class Tokens:
    """An access token and, for app tokens, the refresh token that renews it.

    Personal access tokens carry no refresh token.
    """

    access_token: str
    refresh_token: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"access_token": self.access_token, "refresh_token": self.refresh_token}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Tokens:
        return cls(access_token=data["access_token"], refresh_token=data.get("refresh_token"))


@dataclass
class UserInfo:
    nickname: str


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


def token_cache_path(cache_dir: Path) -> Path:
    return cache_dir / TOKEN_FILE_NAME


def load_cached_tokens(path: Path) -> Tokens | None:
    """Return the cached tokens, or None when missing, empty or invalid."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        return Tokens.from_dict(data)
    except FileNotFoundError:
        return None
    except (OSError, ValueError, KeyError, TypeError) as exc:
        log.debug("Ignoring unreadable token cache %s: %s", path, exc)
        return None


def save_tokens(tokens: Tokens, path: Path) -> None:
    """Write *tokens* to *path*, readable by the current user only."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(tokens.to_dict(), indent=2), encoding="utf-8")
    os.chmod(path, 0o600)
    click.echo(f"✅ Token saved at location: {path}")


# ---------------------------------------------------------------------------
# Remote checks
# ---------------------------------------------------------------------------


def verify_tokens(tokens: Tokens, *, timeout: float = 10.0) -> bool:
    """True when GitHub still accepts the access token."""
    try:
        resp = requests.get(
            GITHUB_USER_URL,
            headers={
                "User-Agent": _USER_AGENT,
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {tokens.access_token}",
                "X-GitHub-Api-Version": GITHUB_API_VERSION,
            },
            timeout=timeout,
        )
    except requests.RequestException as exc:
        log.warning("Could not verify the access token: %s", exc)
        return False
    return resp.ok


def refresh_tokens(tokens: Tokens, server_url: str, *, timeout: float = 10.0) -> Tokens | None:
    """Exchange the refresh token for new tokens.

    Tokens without a refresh token are returned unchanged.  Returns None
    when the collector refuses or cannot be reached.
    """
    if tokens.refresh_token is None:
        log.info("Personal access tokens do not need to be refreshed.")
        return tokens

    click.echo("Access token must be refreshed.")
    try:
        resp = requests.post(
            f"{server_url}auth/refresh-token",
            headers={
                "User-Agent": _USER_AGENT,
                "Content-Type": "application/json",
                "Authorization": f"Bearer-Refresh {tokens.refresh_token}",
            },
            data=b"",
            timeout=timeout,
        )
    except requests.RequestException as exc:
        log.warning("Token refresh failed: %s", exc)
        return None

    if not resp.ok:
        log.warning("Token refresh rejected: HTTP %d", resp.status_code)
        return None
    try:
        new_tokens = Tokens.from_dict(resp.json())
    except (ValueError, KeyError, TypeError):
        log.warning("Invalid token refresh response")
        return None

    click.echo("✅ Token refreshed!")
    return new_tokens


def get_tokens(
    settings: OrchestratorSettings,
    *,
    verifier: Callable[[Tokens], bool] = verify_tokens,
) -> Tokens | None:
    """Return usable tokens, or None when there are none."""
    if settings.bot_token:
        return Tokens(access_token=settings.bot_token)

    path = token_cache_path(settings.cache_dir)
    tokens = load_cached_tokens(path)
    if tokens is None:
        log.warning(
            "No access token found. Set GITHUB_BOT_TOKEN or place tokens in %s.",
            path,
        )
        return None

    if verifier(tokens):
        return tokens

    refreshed = refresh_tokens(tokens, settings.server_url)
    if refreshed is None:
        click.echo("⚠ Cannot refresh the access token. The tokens need to be reissued.")
        return None
    save_tokens(refreshed, path)
    return refreshed


def get_username(access_token: str, server_url: str, *, timeout: float = 10.0) -> UserInfo:
    """Return the collector's view of the token's user.

    Raises:
        AuthError: the token format is unsupported or the collector refuses it.
    """
    try:
        auth_value = authorization_header(access_token)
    except ValueError as exc:
        raise AuthError(str(exc)) from exc

    try:
        resp = requests.get(
            f"{server_url}users/me",
            headers={
                "User-Agent": _USER_AGENT,
                "Content-Type": "application/json",
                "Authorization": auth_value,
            },
            timeout=timeout,
        )
    except requests.RequestException as exc:
        raise AuthError(f"Cannot reach the benchmark server: {exc}") from exc

    if resp.status_code != 200:
        raise AuthError(f"error {resp.status_code}")
    try:
        return UserInfo(nickname=resp.json()["nickname"])
    except (ValueError, KeyError, TypeError) as exc:
        raise AuthError("Invalid user response from the benchmark server") from exc
