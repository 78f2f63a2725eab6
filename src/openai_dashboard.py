from __future__ import annotations

import http.client
import json
import logging
import urllib.error
import urllib.request
from pathlib import Path
from typing import Any, Callable, Protocol

from browser_cookies import CookieStore, account_key, normalize_email
from fetch_errors import LoginRequired, MalformedOutput, NetworkFailure, NoDashboardData
from usage_models import DashboardSnapshot
from utils.json_payload import as_float, clean_text
from utils.timefmt import now_utc

LOG = logging.getLogger(__name__)

ME_URL = "https://chatgpt.com/backend-api/me"
USAGE_URL = "https://chatgpt.com/backend-api/wham/usage"
REQUEST_TIMEOUT_SECONDS = 15


class DashboardFetcher(Protocol):
    def load_latest_dashboard(
        self, account_email: str | None, log: Callable[[str], None] | None = None
    ) -> DashboardSnapshot: ...


def _request_json(url: str, *, cookie_header: str, timeout: int = REQUEST_TIMEOUT_SECONDS) -> dict[str, Any]:
    req = urllib.request.Request(
        url,
        headers={
            "Cookie": cookie_header,
            "User-Agent": "Mozilla/5.0",
            "Accept": "application/json",
        },
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            data = resp.read()
    except urllib.error.HTTPError as exc:
        if exc.code in (401, 403):
            raise LoginRequired("chatgpt.com session is not signed in") from exc
        raise NetworkFailure(f"chatgpt.com returned HTTP {exc.code}") from exc
    except (urllib.error.URLError, http.client.HTTPException, TimeoutError, OSError) as exc:
        raise NetworkFailure(f"chatgpt.com unreachable: {exc}") from exc
    try:
        decoded = json.loads(data.decode("utf-8", errors="replace"))
    except json.JSONDecodeError as exc:
        raise MalformedOutput("chatgpt.com returned invalid JSON") from exc
    if not isinstance(decoded, dict):
        raise MalformedOutput("chatgpt.com returned a non-object payload")
    return decoded


def fetch_signed_in_email(cookie_header: str) -> str | None:
    try:
        me = _request_json(ME_URL, cookie_header=cookie_header)
    except (LoginRequired, NetworkFailure, MalformedOutput) as exc:
        LOG.debug("Session lookup failed (%s)", exc)
        return None
    return clean_text(me.get("email"))


def parse_dashboard(usage: dict[str, Any], *, signed_in_email: str | None) -> DashboardSnapshot:
    review = usage.get("code_review_rate_limit")
    window = review.get("primary_window") if isinstance(review, dict) else None
    used = as_float(window.get("used_percent")) if isinstance(window, dict) else None
    breakdown = usage.get("daily_breakdown")
    events = usage.get("credit_events")
    snapshot = DashboardSnapshot(
        signed_in_email=signed_in_email,
        updated_at=now_utc(),
        code_review_remaining_percent=max(0.0, 100.0 - used) if used is not None else None,
        usage_breakdown=[item for item in breakdown if isinstance(item, dict)] if isinstance(breakdown, list) else [],
        credit_events=[item for item in events if isinstance(item, dict)] if isinstance(events, list) else [],
    )
    if snapshot.code_review_remaining_percent is None and not snapshot.usage_breakdown and not snapshot.credit_events:
        raise NoDashboardData("OpenAI dashboard returned no usage data")
    return snapshot


class OpenAIDashboardFetcher:
    def __init__(self, cookie_store: CookieStore) -> None:
        self.cookie_store = cookie_store

    def load_latest_dashboard(
        self, account_email: str | None, log: Callable[[str], None] | None = None
    ) -> DashboardSnapshot:
        log = log or LOG.debug
        header = self.cookie_store.load(account_email)
        if header is None:
            raise LoginRequired("no stored chatgpt.com session for this account")
        me = _request_json(ME_URL, cookie_header=header)
        signed_in = clean_text(me.get("email"))
        log(f"dashboard session signed in as {signed_in or 'unknown'}")
        usage = _request_json(USAGE_URL, cookie_header=header)
        return parse_dashboard(usage, signed_in_email=signed_in)


class DashboardCacheStore:
    """Last good dashboard per account, used as a cold-start fallback."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def _path(self, email: str) -> Path:
        return self.root / f"{account_key(email)}.json"

    def load(self, email: str | None) -> DashboardSnapshot | None:
        normalized = normalize_email(email)
        if normalized is None:
            return None
        try:
            payload = json.loads(self._path(normalized).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        if not isinstance(payload, dict) or payload.get("account_email") != normalized:
            return None
        raw = payload.get("snapshot")
        if not isinstance(raw, dict):
            return None
        try:
            return DashboardSnapshot.from_dict(raw)
        except (TypeError, ValueError) as exc:
            LOG.warning("Discarding unreadable dashboard cache for %s (%s)", normalized, exc)
            return None

    def save(self, email: str, snapshot: DashboardSnapshot) -> None:
        normalized = normalize_email(email)
        if normalized is None:
            return
        self.root.mkdir(parents=True, exist_ok=True)
        payload = {"account_email": normalized, "snapshot": snapshot.to_dict()}
        tmp = self._path(normalized).with_suffix(".tmp")
        tmp.write_text(json.dumps(payload, ensure_ascii=True), encoding="utf-8")
        tmp.replace(self._path(normalized))
