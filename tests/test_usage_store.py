from __future__ import annotations

import threading
import time
from dataclasses import replace
from datetime import datetime, timezone

import pytest

from fetch_errors import DataNotYetAvailable, NetworkFailure, SubprocessTimedOut
from path_environment import LoginShellPathCache
from providers.codex import CodexAccountInfo
from providers.registry import ProviderMetadata, ProviderSpec
from session_quota import SessionQuotaNotifier, SessionQuotaTransition
from settings import _FREQUENCY_SECONDS, RefreshFrequency, Settings
from usage_models import CreditsSnapshot, Provider, ProviderStatus, RateWindow, StatusIndicator, UsageSnapshot
from usage_store import CREDITS_LOADING_MESSAGE, UsageStore

NOW = datetime(2025, 11, 20, 12, 0, tzinfo=timezone.utc)


def _snapshot(remaining: float, email: str | None = None, login_method: str | None = None) -> UsageSnapshot:
    return UsageSnapshot(
        primary=RateWindow.from_remaining(remaining),
        secondary=RateWindow.from_remaining(80),
        updated_at=NOW,
        account_email=email,
        login_method=login_method,
    )


class _Sequence:
    """Callable that replays results (snapshots or exceptions) in order, repeating the last."""

    def __init__(self, *results) -> None:
        self.results = list(results)
        self.calls = 0

    def __call__(self):
        index = min(self.calls, len(self.results) - 1)
        self.calls += 1
        result = self.results[index]
        if isinstance(result, BaseException):
            raise result
        return result


class _FakeCodexFetcher:
    def __init__(self, credits=None, email: str | None = None) -> None:
        self.credits = credits or _Sequence(CreditsSnapshot(remaining=10, updated_at=NOW))
        self.email = email

    def load_latest_credits(self):
        return self.credits()

    def load_account_info(self):
        return CodexAccountInfo(email=self.email)


class _FakeRunner:
    def __init__(self) -> None:
        self.terminated = False

    def read_version(self, binary, args=("--version",), *, timeout=5.0):
        return f"{binary} 1.0" if binary else None

    def terminate_all(self) -> int:
        self.terminated = True
        return 0


class _RecordingReconciler:
    """Records each reconcile call with the snapshots the store held at that moment."""

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.store: UsageStore | None = None
        self.calls: list[tuple] = []
        self.imports: list[str | None] = []
        self.cooldown_seconds = 300.0

    def reconcile(self, *, enabled, target_email):
        seen = {provider: self.store.snapshot(provider) for provider in Provider} if self.store else {}
        self.calls.append((enabled, target_email, seen))
        if self.error is not None:
            raise self.error

    def import_now(self, target_email):
        self.imports.append(target_email)

    def view(self):
        return {"phase": "settled", "target_email": self.calls[-1][1] if self.calls else ""}


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def _metadata(provider: Provider, *, status_url: str | None = None, binary: str | None = None) -> ProviderMetadata:
    return ProviderMetadata(
        provider=provider,
        display_name=provider.value.capitalize(),
        cli_name=provider.value,
        override_key=f"{provider.value.upper()}_CLI_PATH",
        status_page_url=status_url,
        resolve_binary=lambda: binary,
    )


def _store(
    fetches: dict[Provider, object],
    *,
    settings: Settings | None = None,
    enabled: dict[Provider, bool] | None = None,
    codex_fetcher: _FakeCodexFetcher | None = None,
    status_fetcher=None,
    status_urls: dict[Provider, str] | None = None,
    binaries: dict[Provider, str] | None = None,
    notifications: list | None = None,
    reconciler=None,
    on_refreshed=None,
) -> UsageStore:
    enabled = enabled if enabled is not None else {provider: True for provider in fetches}
    specs = {
        provider: ProviderSpec(
            metadata=_metadata(
                provider,
                status_url=(status_urls or {}).get(provider),
                binary=(binaries or {}).get(provider),
            ),
            is_enabled=lambda p=provider: enabled.get(p, False),
            fetch=fetch,
        )
        for provider, fetch in fetches.items()
    }
    sink = (lambda *args: notifications.append(args)) if notifications is not None else None
    return UsageStore(
        settings=settings or Settings(enabled_providers=frozenset(fetches), status_checks_enabled=False),
        specs=specs,
        codex_fetcher=codex_fetcher or _FakeCodexFetcher(),
        runner=_FakeRunner(),
        notifier=SessionQuotaNotifier(sink),
        status_fetcher=status_fetcher or (lambda url: ProviderStatus(indicator=StatusIndicator.NONE)),
        shell_cache=LoginShellPathCache(capturer=lambda shell, timeout: None),
        reconciler=reconciler,
        on_refreshed=on_refreshed,
    )


@pytest.fixture
def stores():
    created: list[UsageStore] = []
    yield created
    for store in created:
        store.stop()


def test_single_flake_keeps_previous_snapshot(stores) -> None:
    fetch = _Sequence(_snapshot(60), NetworkFailure("boom"), NetworkFailure("boom again"))
    store = _store({Provider.CLAUDE: fetch})
    stores.append(store)

    assert store.refresh() is True
    assert store.snapshot(Provider.CLAUDE).primary.remaining_percent == 60

    store.refresh()
    assert store.snapshot(Provider.CLAUDE) is not None
    assert store.error(Provider.CLAUDE) is None
    assert store.failure_streak(Provider.CLAUDE) == 1

    store.refresh()
    assert store.snapshot(Provider.CLAUDE) is None
    assert store.error(Provider.CLAUDE) == "boom again"
    assert store.is_stale(Provider.CLAUDE) is True


def test_failure_without_prior_data_surfaces_immediately(stores) -> None:
    store = _store({Provider.GEMINI: _Sequence(SubprocessTimedOut("gemini CLI timed out after 30s"))})
    stores.append(store)

    store.refresh()
    assert store.snapshot(Provider.GEMINI) is None
    assert store.error(Provider.GEMINI) == "gemini CLI timed out after 30s"


def test_success_resets_failure_streak(stores) -> None:
    fetch = _Sequence(_snapshot(60), NetworkFailure("x"), _snapshot(55), NetworkFailure("y"))
    store = _store({Provider.CLAUDE: fetch})
    stores.append(store)

    for _ in range(4):
        store.refresh()
    assert store.snapshot(Provider.CLAUDE).primary.remaining_percent == 55
    assert store.error(Provider.CLAUDE) is None


def test_disabled_provider_state_is_cleared(stores) -> None:
    enabled = {Provider.CLAUDE: True}
    store = _store({Provider.CLAUDE: _Sequence(_snapshot(50))}, enabled=enabled)
    stores.append(store)

    store.refresh()
    assert store.snapshot(Provider.CLAUDE) is not None

    enabled[Provider.CLAUDE] = False
    store.refresh()
    assert store.snapshot(Provider.CLAUDE) is None
    assert store.error(Provider.CLAUDE) is None
    assert store.failure_streak(Provider.CLAUDE) == 0


def test_session_depletion_and_refill_notify_once_each(stores) -> None:
    posted: list[tuple] = []
    fetch = _Sequence(_snapshot(12), _snapshot(0), _snapshot(0), _snapshot(5))
    store = _store({Provider.CODEX: fetch}, notifications=posted)
    stores.append(store)

    for _ in range(4):
        store.refresh()
    assert [(item[0], item[1]) for item in posted] == [
        (SessionQuotaTransition.DEPLETED, Provider.CODEX),
        (SessionQuotaTransition.REFILLED, Provider.CODEX),
    ]


def test_startup_depleted_reading_notifies(stores) -> None:
    posted: list[tuple] = []
    store = _store({Provider.CODEX: _Sequence(_snapshot(0))}, notifications=posted)
    stores.append(store)

    store.refresh()
    assert [item[0] for item in posted] == [SessionQuotaTransition.DEPLETED]


def test_notifications_can_be_disabled(stores) -> None:
    posted: list[tuple] = []
    settings = Settings(
        enabled_providers=frozenset({Provider.CODEX}),
        status_checks_enabled=False,
        session_quota_notifications_enabled=False,
    )
    store = _store({Provider.CODEX: _Sequence(_snapshot(10), _snapshot(0))}, settings=settings, notifications=posted)
    stores.append(store)

    store.refresh()
    store.refresh()
    assert posted == []


def test_status_failure_keeps_previous_status(stores) -> None:
    statuses = _Sequence(
        ProviderStatus(indicator=StatusIndicator.MINOR, description="Degraded"),
        NetworkFailure("status offline"),
    )
    settings = Settings(enabled_providers=frozenset({Provider.CLAUDE}))
    store = _store(
        {Provider.CLAUDE: _Sequence(_snapshot(50))},
        settings=settings,
        status_fetcher=lambda url: statuses(),
        status_urls={Provider.CLAUDE: "https://status.anthropic.com"},
    )
    stores.append(store)

    store.refresh()
    assert store.status_indicator(Provider.CLAUDE) is StatusIndicator.MINOR
    store.refresh()
    assert store.status(Provider.CLAUDE).description == "Degraded"


def _offline_status(url: str) -> ProviderStatus:
    raise NetworkFailure("offline")


def test_status_failure_without_history_is_unknown(stores) -> None:
    settings = Settings(enabled_providers=frozenset({Provider.CLAUDE}))
    store = _store(
        {Provider.CLAUDE: _Sequence(_snapshot(50))},
        settings=settings,
        status_fetcher=_offline_status,
        status_urls={Provider.CLAUDE: "https://status.anthropic.com"},
    )
    stores.append(store)

    store.refresh()
    assert store.status_indicator(Provider.CLAUDE) is StatusIndicator.UNKNOWN
    assert store.status_indicator(Provider.GEMINI) is StatusIndicator.NONE


def test_credits_loading_then_cached_on_failure(stores) -> None:
    credits = _Sequence(
        DataNotYetAvailable("data not available yet"),
        CreditsSnapshot(remaining=42, updated_at=NOW),
        NetworkFailure("offline"),
        DataNotYetAvailable("data not available yet"),
    )
    store = _store({Provider.CODEX: _Sequence(_snapshot(50))}, codex_fetcher=_FakeCodexFetcher(credits=credits))
    stores.append(store)

    store.refresh()
    assert store.credits is None
    assert store.last_credits_error == CREDITS_LOADING_MESSAGE

    store.refresh()
    assert store.credits.remaining == 42
    assert store.last_credits_error is None

    store.refresh()
    assert store.credits.remaining == 42
    assert store.last_credits_error.startswith("Last Codex credits refresh failed: offline.")

    store.refresh()
    assert store.credits.remaining == 42
    assert store.last_credits_error is None


def test_refresh_is_single_flight(stores) -> None:
    entered = threading.Event()
    release = threading.Event()

    def _slow_fetch():
        entered.set()
        release.wait(5)
        return _snapshot(70)

    store = _store({Provider.CLAUDE: _slow_fetch})
    stores.append(store)

    worker = threading.Thread(target=store.refresh)
    worker.start()
    assert entered.wait(5)
    assert store.is_refreshing is True
    assert store.refresh() is False
    release.set()
    worker.join(5)

    assert store.is_refreshing is False
    assert store.snapshot(Provider.CLAUDE).primary.remaining_percent == 70


def test_fetch_timeout_is_reported(stores) -> None:
    release = threading.Event()

    def _hung_fetch():
        release.wait(5)
        return _snapshot(70)

    settings = replace(
        Settings(enabled_providers=frozenset({Provider.CLAUDE}), status_checks_enabled=False),
        fetch_timeout_seconds=0.2,
    )
    store = _store({Provider.CLAUDE: _hung_fetch}, settings=settings)
    stores.append(store)

    store.refresh()
    release.set()
    assert store.error(Provider.CLAUDE) == "Claude fetch timed out"


def test_detect_installed_providers_defaults_to_primary(stores) -> None:
    store = _store({Provider.CODEX: _Sequence(_snapshot(50)), Provider.CLAUDE: _Sequence(_snapshot(50))})
    stores.append(store)
    assert store.detect_installed_providers() == frozenset({Provider.CODEX})

    other = _store(
        {Provider.CODEX: _Sequence(_snapshot(50)), Provider.CLAUDE: _Sequence(_snapshot(50))},
        binaries={Provider.CLAUDE: "/usr/local/bin/claude"},
    )
    stores.append(other)
    assert other.detect_installed_providers() == frozenset({Provider.CLAUDE})


def test_detect_versions_uses_runner(stores) -> None:
    store = _store({Provider.CLAUDE: _Sequence(_snapshot(50))}, binaries={Provider.CLAUDE: "/opt/claude"})
    stores.append(store)
    store.detect_versions()
    assert store.version(Provider.CLAUDE) == "/opt/claude 1.0"


def test_dashboard_email_prefers_snapshot_then_auth_file(stores) -> None:
    store = _store(
        {Provider.CODEX: _Sequence(_snapshot(50))},
        codex_fetcher=_FakeCodexFetcher(email="auth@example.com"),
    )
    stores.append(store)
    assert store.codex_account_email_for_dashboard() == "auth@example.com"

    direct = _store(
        {Provider.CODEX: _Sequence(_snapshot(50, email=" live@example.com "))},
        codex_fetcher=_FakeCodexFetcher(email="auth@example.com"),
    )
    stores.append(direct)
    direct.refresh()
    assert direct.codex_account_email_for_dashboard() == "live@example.com"


def test_claude_subscription_and_payload(stores) -> None:
    store = _store({Provider.CLAUDE: _Sequence(_snapshot(50, login_method="Claude Max"))})
    stores.append(store)
    store.refresh()

    assert store.is_claude_subscription() is True
    payload = store.status_payload()
    assert payload["providers"]["claude"]["enabled"] is True
    assert payload["providers"]["claude"]["snapshot"]["primary"]["remaining_percent"] == 50
    assert payload["providers"]["codex"]["enabled"] is False
    assert payload["last_refreshed_at"]


def test_stop_terminates_runner_and_blocks_refresh(stores) -> None:
    store = _store({Provider.CLAUDE: _Sequence(_snapshot(50))})
    store.stop()
    assert store._runner.terminated is True
    assert store.refresh() is False


def test_apply_settings_keeps_detected_providers(stores) -> None:
    store = _store({Provider.CLAUDE: _Sequence(_snapshot(50))})
    stores.append(store)
    store.apply_settings(Settings(status_checks_enabled=False))
    assert store.settings.enabled_providers == frozenset({Provider.CLAUDE})


def test_refresh_requested_while_busy_runs_again(stores) -> None:
    entered = threading.Event()
    release = threading.Event()
    calls: list[int] = []

    def _slow_fetch():
        calls.append(1)
        entered.set()
        release.wait(5)
        return _snapshot(70)

    store = _store({Provider.CLAUDE: _slow_fetch})
    stores.append(store)

    worker = threading.Thread(target=store.refresh)
    worker.start()
    assert entered.wait(5)
    assert store.refresh(rerun_if_busy=True) is False
    release.set()
    worker.join(5)

    assert len(calls) == 2
    assert store.is_refreshing is False


def test_login_path_capture_enables_and_fetches_detected_providers(stores) -> None:
    live: list[UsageStore] = []
    claude_fetch = _Sequence(_snapshot(55))
    specs = {
        Provider.CODEX: ProviderSpec(
            metadata=_metadata(Provider.CODEX),
            is_enabled=lambda: live[0].is_enabled(Provider.CODEX),
            fetch=_Sequence(_snapshot(50)),
        ),
        Provider.CLAUDE: ProviderSpec(
            metadata=_metadata(Provider.CLAUDE, binary="/bin/claude"),
            is_enabled=lambda: live[0].is_enabled(Provider.CLAUDE),
            fetch=claude_fetch,
        ),
    }
    store = UsageStore(
        settings=Settings(refresh_frequency=RefreshFrequency.MANUAL, status_checks_enabled=False),
        specs=specs,
        codex_fetcher=_FakeCodexFetcher(),
        runner=_FakeRunner(),
        status_fetcher=lambda url: ProviderStatus(indicator=StatusIndicator.NONE),
        shell_cache=LoginShellPathCache(capturer=lambda shell, timeout: ["/bin", "/usr/bin"]),
    )
    live.append(store)
    stores.append(store)

    store.start()

    assert _wait_for(lambda: store.snapshot(Provider.CLAUDE) is not None)
    assert store.enabled_providers() == [Provider.CLAUDE]
    assert claude_fetch.calls >= 1
    assert store._timer_stop is None


def test_reconciler_runs_once_after_fan_out_with_codex_email(stores) -> None:
    reconciler = _RecordingReconciler()
    settings = Settings(
        enabled_providers=frozenset({Provider.CODEX, Provider.CLAUDE}),
        status_checks_enabled=False,
        openai_dashboard_enabled=True,
    )
    store = _store(
        {
            Provider.CODEX: _Sequence(_snapshot(50, email="live@example.com")),
            Provider.CLAUDE: _Sequence(_snapshot(40)),
        },
        settings=settings,
        codex_fetcher=_FakeCodexFetcher(email="auth@example.com"),
        reconciler=reconciler,
    )
    reconciler.store = store
    stores.append(store)

    store.refresh()

    assert len(reconciler.calls) == 1
    enabled, target, seen = reconciler.calls[0]
    assert enabled is True
    assert target == "live@example.com"
    assert seen[Provider.CODEX].account_email == "live@example.com"
    assert seen[Provider.CLAUDE].primary.remaining_percent == 40

    store.refresh()
    assert len(reconciler.calls) == 2


def test_reconciler_sees_disabled_dashboard_and_skips_when_codex_disabled(stores) -> None:
    reconciler = _RecordingReconciler()
    store = _store(
        {Provider.CODEX: _Sequence(_snapshot(50, email="live@example.com"))},
        settings=Settings(enabled_providers=frozenset({Provider.CODEX}), status_checks_enabled=False),
        reconciler=reconciler,
    )
    stores.append(store)
    store.refresh()
    assert [call[:2] for call in reconciler.calls] == [(False, None)]

    skipped = _RecordingReconciler()
    other = _store(
        {Provider.CLAUDE: _Sequence(_snapshot(50))},
        settings=Settings(
            enabled_providers=frozenset({Provider.CLAUDE}),
            status_checks_enabled=False,
            openai_dashboard_enabled=True,
        ),
        reconciler=skipped,
    )
    stores.append(other)
    other.refresh()
    assert skipped.calls == []


def test_reconciler_error_does_not_abort_cycle(stores) -> None:
    refreshed: list[UsageStore] = []
    reconciler = _RecordingReconciler(error=ValueError("unexpected payload"))
    store = _store(
        {Provider.CODEX: _Sequence(_snapshot(50, email="live@example.com"))},
        settings=Settings(
            enabled_providers=frozenset({Provider.CODEX}),
            status_checks_enabled=False,
            openai_dashboard_enabled=True,
        ),
        reconciler=reconciler,
        on_refreshed=refreshed.append,
    )
    stores.append(store)

    assert store.refresh() is True
    assert refreshed == [store]
    assert store.last_refreshed_at is not None
    assert store.is_refreshing is False
    assert store.snapshot(Provider.CODEX).primary.remaining_percent == 50


def test_import_dashboard_cookies_now(stores) -> None:
    reconciler = _RecordingReconciler()
    settings = Settings(enabled_providers=frozenset({Provider.CODEX}), status_checks_enabled=False)
    store = _store(
        {Provider.CODEX: _Sequence(_snapshot(50))},
        settings=settings,
        codex_fetcher=_FakeCodexFetcher(email="auth@example.com"),
        reconciler=reconciler,
    )
    stores.append(store)

    assert store.import_dashboard_cookies_now() == {"imported": False, "reason": "openai_dashboard_disabled"}
    assert reconciler.imports == []

    store.settings = replace(settings, openai_dashboard_enabled=True)
    result = store.import_dashboard_cookies_now()

    assert reconciler.imports == ["auth@example.com"]
    assert [call[:2] for call in reconciler.calls] == [(True, "auth@example.com")]
    assert result["imported"] is True
    assert result["phase"] == "settled"

    bare = _store({Provider.CODEX: _Sequence(_snapshot(50))}, settings=replace(settings, openai_dashboard_enabled=True))
    stores.append(bare)
    assert bare.import_dashboard_cookies_now()["imported"] is False


def test_timer_follows_refresh_frequency(stores, monkeypatch) -> None:
    monkeypatch.setitem(_FREQUENCY_SECONDS, RefreshFrequency.ONE_MINUTE, 0.05)
    fetch = _Sequence(_snapshot(50))
    manual = Settings(
        enabled_providers=frozenset({Provider.CLAUDE}),
        refresh_frequency=RefreshFrequency.MANUAL,
        status_checks_enabled=False,
    )
    store = _store({Provider.CLAUDE: fetch}, settings=manual)
    stores.append(store)

    store.start_timer()
    assert store._timer_stop is None
    time.sleep(0.3)
    assert fetch.calls == 0

    store.apply_settings(replace(manual, refresh_frequency=RefreshFrequency.ONE_MINUTE))
    assert store._timer_stop is not None
    assert _wait_for(lambda: fetch.calls >= 3)

    store.apply_settings(manual)
    assert store._timer_stop is None
    time.sleep(0.3)
    assert _wait_for(lambda: not store.is_refreshing)
    settled = fetch.calls
    time.sleep(0.3)
    assert fetch.calls == settled


def test_apply_settings_updates_cookie_import_cooldown(stores) -> None:
    reconciler = _RecordingReconciler()
    settings = Settings(enabled_providers=frozenset({Provider.CLAUDE}), status_checks_enabled=False)
    store = _store({Provider.CLAUDE: _Sequence(_snapshot(50))}, settings=settings, reconciler=reconciler)
    stores.append(store)

    store.apply_settings(replace(settings, cookie_import_cooldown_seconds=90.0))

    assert reconciler.cooldown_seconds == 90.0
