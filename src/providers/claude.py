from __future__ import annotations

from datetime import datetime
from typing import Any, Sequence

from fetch_errors import MalformedOutput
from path_environment import resolve_claude_binary
from providers.cli import CliRunner
from usage_models import RateWindow, UsageSnapshot
from utils.json_payload import as_float, clean_text
from utils.timefmt import now_utc

DEFAULT_USAGE_ARGS = ("usage", "--json")

_SUBSCRIPTION_MARKERS = ("max", "pro", "ultra", "team")


def is_subscription_plan(login_method: str | None) -> bool:
    """True for Max/Pro/Ultra/Team plans; API-key users and unknown plans are not."""
    method = (login_method or "").strip().lower()
    if not method:
        return False
    return any(marker in method for marker in _SUBSCRIPTION_MARKERS)


def _window(raw: Any, minutes: int) -> RateWindow | None:
    if not isinstance(raw, dict):
        return None
    used = as_float(raw.get("pct_used"))
    if used is None:
        return None
    resets = raw.get("resets")
    return RateWindow.from_used(
        used,
        reset_description=resets.strip() if isinstance(resets, str) else None,
        window_minutes=minutes,
    )


def parse_usage(payload: dict[str, Any], *, now: datetime | None = None) -> UsageSnapshot:
    if payload.get("ok") is False:
        hint = clean_text(payload.get("error")) or "claude usage reported ok=false"
        raise MalformedOutput(hint)
    session = _window(payload.get("session_5h"), 5 * 60)
    weekly = _window(payload.get("week_all_models"), 7 * 24 * 60)
    if session is None or weekly is None:
        raise MalformedOutput("claude usage is missing session or weekly window")
    return UsageSnapshot(
        primary=session,
        secondary=weekly,
        tertiary=_window(payload.get("week_opus"), 7 * 24 * 60),
        updated_at=now or now_utc(),
        account_email=clean_text(payload.get("account_email")),
        account_organization=clean_text(payload.get("account_org")),
        login_method=clean_text(payload.get("login_method")),
    )


class ClaudeFetcher:
    def __init__(self, runner: CliRunner, *, timeout_seconds: float, usage_args: Sequence[str] = DEFAULT_USAGE_ARGS) -> None:
        self.runner = runner
        self.timeout_seconds = timeout_seconds
        self.usage_args = list(usage_args)

    def load_latest_usage(self) -> UsageSnapshot:
        payload = self.runner.run_json(
            resolve_claude_binary(), self.usage_args, timeout=self.timeout_seconds, tool="claude"
        )
        return parse_usage(payload)
