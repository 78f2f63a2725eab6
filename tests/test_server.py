from __future__ import annotations

import logging

from server import NotificationLog, _log_level, build_store
from session_quota import SessionQuotaTransition
from settings import Settings
from usage_models import Provider


def test_notification_log_keeps_most_recent() -> None:
    log = NotificationLog(maxlen=3)
    for index in range(5):
        log(SessionQuotaTransition.DEPLETED, Provider.CODEX, f"title {index}", "body")

    recent = log.recent()
    assert [item["title"] for item in recent] == ["title 2", "title 3", "title 4"]
    assert recent[0]["transition"] == "depleted"
    assert recent[0]["provider"] == "codex"
    assert [item["title"] for item in log.recent(limit=1)] == ["title 4"]
    assert log.recent(limit=0) == []


def test_build_store_wires_enablement_to_live_settings(tmp_path) -> None:
    settings = Settings(
        enabled_providers=frozenset({Provider.CLAUDE}),
        cache_dir=tmp_path,
        status_checks_enabled=False,
    )
    store = build_store(settings, NotificationLog())
    try:
        assert store.is_enabled(Provider.CLAUDE) is True
        assert store._specs[Provider.CLAUDE].is_enabled() is True
        assert store._specs[Provider.CODEX].is_enabled() is False

        store.settings = settings.with_enabled_providers(frozenset({Provider.CODEX}))
        assert store._specs[Provider.CLAUDE].is_enabled() is False
        assert store._specs[Provider.CODEX].is_enabled() is True
        assert store._specs[Provider.CODEX].metadata.status_page_url == "https://status.openai.com"
    finally:
        store.stop()


def test_log_level_from_env(monkeypatch) -> None:
    monkeypatch.delenv("USAGE_WATCH_LOG_LEVEL", raising=False)
    assert _log_level() == logging.ERROR
    monkeypatch.setenv("USAGE_WATCH_LOG_LEVEL", "debug")
    assert _log_level() == logging.DEBUG
    monkeypatch.setenv("USAGE_WATCH_LOG_LEVEL", "chatty")
    assert _log_level() == logging.ERROR
