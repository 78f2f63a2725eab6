from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Sequence

from fetch_errors import DataNotYetAvailable, MalformedOutput, UsageFetchError
from path_environment import resolve_codex_binary
from providers.cli import CliRunner
from usage_models import CreditsSnapshot, RateWindow, UsageSnapshot
from utils.json_payload import as_float, clean_text
from utils.jwt import decode_jwt_payload
from utils.timefmt import from_epoch, now_utc

DEFAULT_USAGE_ARGS = ("usage", "--json")
DEFAULT_CREDITS_ARGS = ("credits", "--json")
DEFAULT_VERSION_ARGS = ("-s", "read-only", "-a", "untrusted", "--version")
NOT_READY_MARKER = "data not available yet"


@dataclass(frozen=True)
class CodexAccountInfo:
    email: str | None = None
    plan: str | None = None


def _window(raw: Any, *, now: datetime) -> RateWindow | None:
    if not isinstance(raw, dict):
        return None
    used = as_float(raw.get("used_percent"))
    if used is None:
        return None
    resets_at = from_epoch(raw.get("reset_at"))
    after = as_float(raw.get("reset_after_seconds"))
    if resets_at is None and after is not None:
        resets_at = now + timedelta(seconds=after)
    seconds = raw.get("limit_window_seconds")
    minutes = int(seconds) // 60 if isinstance(seconds, int) and seconds > 0 else None
    return RateWindow.from_used(used, resets_at=resets_at, window_minutes=minutes)


def parse_usage(payload: dict[str, Any], *, now: datetime | None = None) -> UsageSnapshot:
    now = now or now_utc()
    rate_limit = payload.get("rate_limit")
    if not isinstance(rate_limit, dict):
        raise MalformedOutput("codex usage is missing rate_limit")
    primary = _window(rate_limit.get("primary_window"), now=now)
    secondary = _window(rate_limit.get("secondary_window"), now=now)
    if primary is None or secondary is None:
        raise MalformedOutput("codex usage is missing rate limit windows")
    account = payload.get("account") if isinstance(payload.get("account"), dict) else {}
    return UsageSnapshot(
        primary=primary,
        secondary=secondary,
        updated_at=now,
        account_email=clean_text(account.get("email")),
        login_method=clean_text(account.get("plan_type")),
    )


def parse_credits(payload: dict[str, Any], *, now: datetime | None = None) -> CreditsSnapshot:
    credits = payload.get("credits")
    balance = as_float(credits.get("balance")) if isinstance(credits, dict) else None
    if balance is None:
        raise MalformedOutput("codex credits payload is missing credits.balance")
    events = payload.get("events")
    return CreditsSnapshot(
        remaining=balance,
        updated_at=now or now_utc(),
        events=[item for item in events if isinstance(item, dict)] if isinstance(events, list) else [],
    )


def load_account_info(codex_home: str | None = None) -> CodexAccountInfo:
    """Read the signed-in account from the CLI's auth file (slow fallback path)."""
    home = Path(codex_home or os.environ.get("CODEX_HOME") or Path.home() / ".codex").expanduser()
    try:
        payload = json.loads((home / "auth.json").read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return CodexAccountInfo()
    if not isinstance(payload, dict):
        return CodexAccountInfo()
    tokens = payload.get("tokens") if isinstance(payload.get("tokens"), dict) else {}
    claims = decode_jwt_payload(str(tokens.get("id_token") or ""))
    auth_claims = claims.get("https://api.openai.com/auth")
    plan = auth_claims.get("chatgpt_plan_type") if isinstance(auth_claims, dict) else None
    return CodexAccountInfo(email=clean_text(claims.get("email")), plan=clean_text(plan))


class CodexFetcher:
    def __init__(
        self,
        runner: CliRunner,
        *,
        timeout_seconds: float,
        usage_args: Sequence[str] = DEFAULT_USAGE_ARGS,
        credits_args: Sequence[str] = DEFAULT_CREDITS_ARGS,
    ) -> None:
        self.runner = runner
        self.timeout_seconds = timeout_seconds
        self.usage_args = list(usage_args)
        self.credits_args = list(credits_args)

    def load_latest_usage(self) -> UsageSnapshot:
        payload = self.runner.run_json(
            resolve_codex_binary(), self.usage_args, timeout=self.timeout_seconds, tool="codex"
        )
        snapshot = parse_usage(payload)
        if snapshot.account_email is None:
            info = load_account_info()
            if info.email:
                snapshot = UsageSnapshot(
                    primary=snapshot.primary,
                    secondary=snapshot.secondary,
                    updated_at=snapshot.updated_at,
                    account_email=info.email,
                    login_method=snapshot.login_method or info.plan,
                )
        return snapshot

    def load_latest_credits(self) -> CreditsSnapshot:
        try:
            payload = self.runner.run_json(
                resolve_codex_binary(), self.credits_args, timeout=self.timeout_seconds, tool="codex"
            )
        except UsageFetchError as exc:
            if NOT_READY_MARKER in str(exc).lower():
                raise DataNotYetAvailable(str(exc)) from exc
            raise
        error = payload.get("error")
        if isinstance(error, str) and NOT_READY_MARKER in error.lower():
            raise DataNotYetAvailable(error)
        return parse_credits(payload)

    def load_account_info(self) -> CodexAccountInfo:
        return load_account_info()
