from __future__ import annotations

import atexit
import logging
import os
import threading
from collections import deque
from pathlib import Path
from typing import Any

from fastmcp import FastMCP

from browser_cookies import CookieStore, DashboardCookieImporter
from config_watch import ConfigWatcher
from dashboard_reconciler import DashboardReconciler
from openai_dashboard import DashboardCacheStore, OpenAIDashboardFetcher, fetch_signed_in_email
from providers import CliRunner, build_fetchers, build_metadata, build_specs
from session_quota import SessionQuotaNotifier, SessionQuotaTransition
from settings import ENV_LOG_LEVEL, Settings, load_settings, resolve_config_path
from usage_models import Provider
from usage_store import UsageStore
from utils.timefmt import format_iso8601, now_utc

LOG = logging.getLogger(__name__)

SERVER_NAME = "Usage_Watch_MCP"
MAX_CLI_OUTPUT_BYTES = 2_000_000


class NotificationLog:
    """Most recent session-quota notifications, newest last."""

    def __init__(self, maxlen: int = 50) -> None:
        self._lock = threading.Lock()
        self._items: deque[dict[str, Any]] = deque(maxlen=maxlen)

    def __call__(self, transition: SessionQuotaTransition, provider: Provider, title: str, body: str) -> None:
        with self._lock:
            self._items.append(
                {
                    "at": format_iso8601(now_utc()),
                    "provider": provider.value,
                    "transition": transition.value,
                    "title": title,
                    "body": body,
                }
            )

    def recent(self, limit: int = 10) -> list[dict[str, Any]]:
        with self._lock:
            items = list(self._items)
        return items[-max(0, limit):] if limit else []


def build_store(settings: Settings, notifications: NotificationLog | None = None) -> UsageStore:
    runner = CliRunner(max_output_bytes=MAX_CLI_OUTPUT_BYTES)
    codex_fetcher, claude_fetcher, gemini_fetcher = build_fetchers(settings, runner)

    cookie_store = CookieStore(settings.cache_dir / "cookies")
    importer = DashboardCookieImporter(
        cookie_store,
        session_lookup=fetch_signed_in_email,
        order=settings.browser_cookie_order,
    )
    reconciler = DashboardReconciler(
        fetcher=OpenAIDashboardFetcher(cookie_store),
        importer=importer,
        cache_store=DashboardCacheStore(settings.cache_dir / "openai-dashboard"),
        cooldown_seconds=settings.cookie_import_cooldown_seconds,
    )

    # Enablement is read from the store so config reloads take effect without rebuilding specs.
    specs = build_specs(
        metadata=build_metadata(settings),
        is_enabled=lambda provider: store.settings.is_provider_enabled(provider),
        codex_fetcher=codex_fetcher,
        claude_fetcher=claude_fetcher,
        gemini_fetcher=gemini_fetcher,
    )
    store = UsageStore(
        settings=settings,
        specs=specs,
        codex_fetcher=codex_fetcher,
        runner=runner,
        reconciler=reconciler,
        notifier=SessionQuotaNotifier(notifications),
        on_refreshed=_log_refresh,
    )
    return store


def _log_refresh(store: UsageStore) -> None:
    stale = [provider.value for provider in store.enabled_providers() if store.is_stale(provider)]
    if stale:
        LOG.info("Refresh finished; stale providers: %s", ", ".join(stale))
    else:
        LOG.info("Refresh finished")


def build_mcp(store: UsageStore, notifications: NotificationLog | None = None) -> FastMCP:
    mcp = FastMCP(SERVER_NAME)

    @mcp.tool(name="usage.status")
    def tool_status(include_notifications: bool = True) -> dict:
        payload = store.status_payload()
        if include_notifications and notifications is not None:
            payload["notifications"] = notifications.recent()
        return payload

    @mcp.tool(name="usage.refresh")
    def tool_refresh() -> dict:
        started = store.refresh()
        payload = store.status_payload()
        payload["started"] = started
        return payload

    @mcp.tool(name="usage.import_dashboard_cookies")
    def tool_import_dashboard_cookies() -> dict:
        return store.import_dashboard_cookies_now()

    @mcp.tool(name="usage.path_debug")
    def tool_path_debug() -> dict:
        store.refresh_path_debug_info()
        info = store.path_debug_info
        return info.to_dict() if info else {}

    return mcp


def _log_level() -> int:
    raw = os.environ.get(ENV_LOG_LEVEL, "").strip().upper()
    if not raw:
        return logging.ERROR
    level = logging.getLevelName(raw)
    return level if isinstance(level, int) else logging.ERROR


def main() -> None:
    # Keep stdio transport quiet for MCP clients that are sensitive to noisy startup logs.
    logging.basicConfig(level=_log_level())

    config_path: Path = resolve_config_path()
    settings = load_settings(config_path)
    notifications = NotificationLog()
    store = build_store(settings, notifications)
    store.start()
    atexit.register(store.stop)

    watcher = ConfigWatcher(config_path, lambda: store.apply_settings(load_settings(config_path)))
    watcher.start()
    atexit.register(watcher.stop)

    mcp = build_mcp(store, notifications)
    mcp.run(show_banner=False, log_level="ERROR")


if __name__ == "__main__":
    main()
