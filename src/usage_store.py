from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import datetime
from typing import Any, Callable

import session_quota
from dashboard_reconciler import DashboardReconciler
from failure_gate import ConsecutiveFailureGate
from fetch_errors import DataNotYetAvailable, FetchTimeout
from path_environment import LoginShellPathCache, PathDebugSnapshot, path_debug_snapshot
from provider_status import fetch_status
from providers.claude import is_subscription_plan
from providers.cli import CliRunner
from providers.codex import CodexFetcher
from providers.registry import ProviderMetadata, ProviderSpec
from session_quota import SessionQuotaNotifier, SessionQuotaTransition
from settings import Settings
from usage_models import (
    PRIMARY_PROVIDER,
    CreditsSnapshot,
    Provider,
    ProviderStatus,
    StatusIndicator,
    UsageSnapshot,
)
from utils.timefmt import format_iso8601, format_stamp, now_utc

LOG = logging.getLogger(__name__)

CREDITS_LOADING_MESSAGE = "Codex credits are still loading; will retry shortly."


class UsageStore:
    """Polls every provider, gates flaky failures and reconciles the web dashboard.

    ``refresh`` is single-flight. Each cycle fans out one task per provider fetch,
    one per status page and one for credits, waits for all of them, then runs the
    dashboard reconciler because it needs the primary provider's account email.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        specs: dict[Provider, ProviderSpec],
        codex_fetcher: CodexFetcher,
        runner: CliRunner,
        reconciler: DashboardReconciler | None = None,
        notifier: SessionQuotaNotifier | None = None,
        status_fetcher: Callable[[str], ProviderStatus] = fetch_status,
        shell_cache: LoginShellPathCache | None = None,
        on_refreshed: Callable[["UsageStore"], None] | None = None,
    ) -> None:
        self.settings = settings
        self._specs = specs
        self._codex_fetcher = codex_fetcher
        self._runner = runner
        self._reconciler = reconciler
        self._notifier = notifier or SessionQuotaNotifier()
        self._status_fetcher = status_fetcher
        self._shell_cache = shell_cache or LoginShellPathCache.shared()
        self._on_refreshed = on_refreshed

        self._lock = threading.Lock()
        self._snapshots: dict[Provider, UsageSnapshot] = {}
        self._errors: dict[Provider, str] = {}
        self._statuses: dict[Provider, ProviderStatus] = {}
        self._failure_gates = {provider: ConsecutiveFailureGate() for provider in Provider}
        self._last_known_session_remaining: dict[Provider, float] = {}
        self._versions: dict[Provider, str | None] = {}
        self.credits: CreditsSnapshot | None = None
        self.last_credits_error: str | None = None
        self._last_credits_snapshot: CreditsSnapshot | None = None
        self._credits_failure_streak = 0
        self.claude_account_email: str | None = None
        self.claude_account_organization: str | None = None
        self.path_debug_info: PathDebugSnapshot | None = None
        self.last_refreshed_at: datetime | None = None

        self._refresh_lock = threading.Lock()
        self._is_refreshing = False
        self._rerun_requested = False
        self._timer_lock = threading.Lock()
        self._timer_stop: threading.Event | None = None
        self._stopped = threading.Event()

        self._cycle_pool = ThreadPoolExecutor(max_workers=2 * len(Provider) + 1, thread_name_prefix="usage-cycle")
        self._fetch_pool = ThreadPoolExecutor(max_workers=len(Provider), thread_name_prefix="usage-fetch")

    # -- lifecycle ------------------------------------------------------------

    def start(self) -> None:
        self.refresh_path_debug_info()
        self._shell_cache.capture_once(
            timeout=self.settings.shell_capture_timeout_seconds,
            on_finish=self._on_login_path_captured,
        )
        threading.Thread(target=self.detect_versions, daemon=True).start()
        threading.Thread(target=self.refresh, daemon=True).start()
        self.start_timer()

    def stop(self) -> None:
        if self._stopped.is_set():
            return
        self._stopped.set()
        self._cancel_timer()
        self._runner.terminate_all()
        self._cycle_pool.shutdown(wait=False, cancel_futures=True)
        self._fetch_pool.shutdown(wait=False, cancel_futures=True)

    def apply_settings(self, settings: Settings) -> None:
        previous = self.settings
        if settings.enabled_providers is None:
            settings = settings.with_enabled_providers(
                previous.enabled_providers
                if previous.enabled_providers is not None
                else frozenset({PRIMARY_PROVIDER})
            )
        self.settings = settings
        if settings.refresh_frequency != previous.refresh_frequency:
            LOG.info("Refresh frequency changed to %s", settings.refresh_frequency.value)
        if self._reconciler is not None:
            self._reconciler.cooldown_seconds = settings.cookie_import_cooldown_seconds
        self.start_timer()
        self._refresh_in_background()

    def start_timer(self) -> None:
        self._cancel_timer()
        wait_seconds = self.settings.refresh_frequency.seconds
        if wait_seconds is None or self._stopped.is_set():
            return
        stop = threading.Event()
        with self._timer_lock:
            self._timer_stop = stop
        threading.Thread(target=self._timer_loop, args=(stop, wait_seconds), daemon=True).start()

    def _cancel_timer(self) -> None:
        with self._timer_lock:
            if self._timer_stop is not None:
                self._timer_stop.set()
                self._timer_stop = None

    def _timer_loop(self, stop: threading.Event, wait_seconds: float) -> None:
        while not stop.wait(wait_seconds):
            if self._stopped.is_set():
                return
            try:
                self.refresh()
            except Exception:
                LOG.exception("Scheduled refresh failed")

    def _refresh_in_background(self) -> None:
        threading.Thread(target=self.refresh, kwargs={"rerun_if_busy": True}, daemon=True).start()

    def _on_login_path_captured(self, _login_path: list[str] | None) -> None:
        self.refresh_path_debug_info()
        if self.settings.enabled_providers is None:
            self.settings = self.settings.with_enabled_providers(self.detect_installed_providers())
            self._refresh_in_background()

    # -- refresh cycle --------------------------------------------------------

    @property
    def is_refreshing(self) -> bool:
        with self._refresh_lock:
            return self._is_refreshing

    def refresh(self, *, rerun_if_busy: bool = False) -> bool:
        """Run one poll cycle; returns False when another cycle is already running.

        With ``rerun_if_busy`` a call that finds a cycle in flight asks it to run
        one more cycle when it finishes, so settings changes are never dropped.
        """
        with self._refresh_lock:
            if self._stopped.is_set():
                return False
            if self._is_refreshing:
                if rerun_if_busy:
                    self._rerun_requested = True
                return False
            self._is_refreshing = True

        finished = False
        try:
            while True:
                completed = self._run_cycle()
                if completed and self._on_refreshed is not None:
                    self._on_refreshed(self)
                with self._refresh_lock:
                    if not self._rerun_requested or self._stopped.is_set():
                        self._is_refreshing = False
                        self._rerun_requested = False
                        finished = True
                        return completed
                    self._rerun_requested = False
        finally:
            if not finished:
                with self._refresh_lock:
                    self._is_refreshing = False
                    self._rerun_requested = False

    def _run_cycle(self) -> bool:
        try:
            futures = self._submit_cycle_tasks()
        except RuntimeError as exc:
            # Pools refuse new work once stop() has run.
            LOG.debug("Refresh aborted: %s", exc)
            return False
        wait(futures)
        for future in futures:
            if future.cancelled():
                continue
            error = future.exception()
            if error is not None:
                LOG.error("Refresh task failed: %s", error, exc_info=error)

        try:
            self._refresh_dashboard_if_needed()
        except Exception as exc:
            LOG.error("Dashboard reconcile failed: %s", exc, exc_info=exc)
        self.last_refreshed_at = now_utc()
        return True

    def _submit_cycle_tasks(self) -> list[Future]:
        futures: list[Future] = []
        for provider in Provider:
            futures.append(self._cycle_pool.submit(self._refresh_provider, provider))
            futures.append(self._cycle_pool.submit(self._refresh_status, provider))
        futures.append(self._cycle_pool.submit(self._refresh_credits_if_needed))
        return futures

    def _refresh_provider(self, provider: Provider) -> None:
        spec = self._specs.get(provider)
        if spec is None:
            return

        if not spec.is_enabled():
            with self._lock:
                self._snapshots.pop(provider, None)
                self._errors.pop(provider, None)
                self._failure_gates[provider].reset()
                self._statuses.pop(provider, None)
                self._last_known_session_remaining.pop(provider, None)
            return

        try:
            snapshot = self._fetch_pool.submit(spec.fetch).result(timeout=self.settings.fetch_timeout_seconds)
        except FutureTimeout:
            self._record_failure(provider, FetchTimeout(f"{spec.metadata.display_name} fetch timed out"))
            return
        except Exception as exc:
            self._record_failure(provider, exc)
            return

        with self._lock:
            change = self._session_quota_transition(provider, snapshot)
            self._snapshots[provider] = snapshot
            self._errors.pop(provider, None)
            self._failure_gates[provider].record_success()
            if provider is Provider.CLAUDE:
                self.claude_account_email = snapshot.account_email
                self.claude_account_organization = snapshot.account_organization
        if change is not SessionQuotaTransition.NONE:
            self._notifier.post(change, provider)

    def _record_failure(self, provider: Provider, exc: BaseException) -> None:
        with self._lock:
            had_prior_data = provider in self._snapshots
            should_surface = self._failure_gates[provider].should_surface_error(had_prior_data)
            if should_surface:
                LOG.warning("%s fetch failed: %s", provider.value, exc)
                self._errors[provider] = str(exc) or type(exc).__name__
                self._snapshots.pop(provider, None)
            else:
                LOG.debug("%s fetch flaked once; keeping previous snapshot (%s)", provider.value, exc)
                self._errors.pop(provider, None)

    def _session_quota_transition(self, provider: Provider, snapshot: UsageSnapshot) -> SessionQuotaTransition:
        """Classify the new reading; the caller posts the notification outside the lock."""
        current = snapshot.primary.remaining_percent
        previous = self._last_known_session_remaining.get(provider)
        self._last_known_session_remaining[provider] = current
        epsilon = self.settings.depletion_epsilon

        if not self.settings.session_quota_notifications_enabled:
            if session_quota.is_depleted(current, epsilon) or session_quota.is_depleted(previous, epsilon):
                LOG.debug(
                    "notifications disabled: provider=%s prev=%s curr=%s", provider.value, previous, current
                )
            return SessionQuotaTransition.NONE

        if previous is None:
            if session_quota.is_depleted(current, epsilon):
                LOG.info("startup depleted: provider=%s curr=%s", provider.value, current)
                return SessionQuotaTransition.DEPLETED
            return SessionQuotaTransition.NONE

        change = session_quota.transition(previous, current, epsilon)
        if change is SessionQuotaTransition.NONE:
            if session_quota.is_depleted(current, epsilon) or session_quota.is_depleted(previous, epsilon):
                LOG.debug("no transition: provider=%s prev=%s curr=%s", provider.value, previous, current)
            return change

        LOG.info("transition %s: provider=%s prev=%s curr=%s", change.value, provider.value, previous, current)
        return change

    def _refresh_status(self, provider: Provider) -> None:
        if not self.settings.status_checks_enabled:
            return
        spec = self._specs.get(provider)
        url = spec.metadata.status_page_url if spec else None
        if not url:
            return
        try:
            status = self._status_fetcher(url)
        except Exception as exc:
            # Keep the previous status so one hiccup does not flap the indicator.
            with self._lock:
                if provider not in self._statuses:
                    self._statuses[provider] = ProviderStatus(
                        indicator=StatusIndicator.UNKNOWN,
                        description=str(exc),
                        updated_at=None,
                    )
            LOG.debug("%s status check failed: %s", provider.value, exc)
            return
        with self._lock:
            self._statuses[provider] = status

    def _refresh_credits_if_needed(self) -> None:
        if not self.is_enabled(PRIMARY_PROVIDER):
            return
        try:
            credits = self._codex_fetcher.load_latest_credits()
        except DataNotYetAvailable:
            with self._lock:
                if self._last_credits_snapshot is not None:
                    self.credits = self._last_credits_snapshot
                    self.last_credits_error = None
                else:
                    self.credits = None
                    self.last_credits_error = CREDITS_LOADING_MESSAGE
            return
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            with self._lock:
                self._credits_failure_streak += 1
                cached = self._last_credits_snapshot
                if cached is not None:
                    self.credits = cached
                    self.last_credits_error = (
                        f"Last Codex credits refresh failed: {message}. "
                        f"Cached values from {format_stamp(cached.updated_at)}."
                    )
                else:
                    self.credits = None
                    self.last_credits_error = message
            return

        with self._lock:
            self.credits = credits
            self.last_credits_error = None
            self._last_credits_snapshot = credits
            self._credits_failure_streak = 0

    def _refresh_dashboard_if_needed(self) -> None:
        if self._reconciler is None or not self.is_enabled(PRIMARY_PROVIDER):
            return
        enabled = self.settings.openai_dashboard_enabled
        target = self.codex_account_email_for_dashboard() if enabled else None
        self._reconciler.reconcile(enabled=enabled, target_email=target)

    def import_dashboard_cookies_now(self) -> dict[str, Any]:
        if self._reconciler is None or not self.settings.openai_dashboard_enabled:
            return {"imported": False, "reason": "openai_dashboard_disabled"}
        target = self.codex_account_email_for_dashboard()
        self._reconciler.import_now(target)
        self._reconciler.reconcile(enabled=True, target_email=target)
        return {"imported": True, **self._reconciler.view()}

    # -- detection ------------------------------------------------------------

    def detect_installed_providers(self) -> frozenset[Provider]:
        installed = {
            provider for provider, spec in self._specs.items() if spec.metadata.resolve_binary() is not None
        }
        if not installed:
            # Nothing installed: keep the primary provider enabled so errors stay visible.
            installed = {PRIMARY_PROVIDER}
        LOG.info("Detected providers: %s", ", ".join(sorted(item.value for item in installed)))
        return frozenset(installed)

    def detect_versions(self) -> None:
        versions: dict[Provider, str | None] = {}
        for provider, spec in self._specs.items():
            meta: ProviderMetadata = spec.metadata
            versions[provider] = self._runner.read_version(meta.resolve_binary(), meta.version_args)
        with self._lock:
            self._versions = versions

    def refresh_path_debug_info(self) -> None:
        self.path_debug_info = path_debug_snapshot()

    # -- queries --------------------------------------------------------------

    def is_enabled(self, provider: Provider) -> bool:
        return self.settings.is_provider_enabled(provider)

    def enabled_providers(self) -> list[Provider]:
        return [provider for provider in Provider if self.is_enabled(provider)]

    def snapshot(self, provider: Provider) -> UsageSnapshot | None:
        with self._lock:
            return self._snapshots.get(provider)

    def error(self, provider: Provider) -> str | None:
        with self._lock:
            return self._errors.get(provider)

    def status(self, provider: Provider) -> ProviderStatus | None:
        if not self.settings.status_checks_enabled:
            return None
        with self._lock:
            return self._statuses.get(provider)

    def status_indicator(self, provider: Provider) -> StatusIndicator:
        status = self.status(provider)
        return status.indicator if status else StatusIndicator.NONE

    def version(self, provider: Provider) -> str | None:
        with self._lock:
            return self._versions.get(provider)

    def failure_streak(self, provider: Provider) -> int:
        with self._lock:
            return self._failure_gates[provider].streak

    def preferred_snapshot(self) -> UsageSnapshot | None:
        for provider in Provider:
            if self.is_enabled(provider):
                snapshot = self.snapshot(provider)
                if snapshot is not None:
                    return snapshot
        return None

    def is_stale(self, provider: Provider | None = None) -> bool:
        if provider is not None:
            return self.error(provider) is not None
        return any(self.error(item) is not None for item in self.enabled_providers())

    def is_claude_subscription(self) -> bool:
        snapshot = self.snapshot(Provider.CLAUDE)
        return is_subscription_plan(snapshot.login_method if snapshot else None)

    def codex_account_email_for_dashboard(self) -> str | None:
        snapshot = self.snapshot(Provider.CODEX)
        direct = (snapshot.account_email or "").strip() if snapshot else ""
        if direct:
            return direct
        fallback = (self._codex_fetcher.load_account_info().email or "").strip()
        return fallback or None

    def status_payload(self) -> dict[str, Any]:
        providers: dict[str, Any] = {}
        for provider in Provider:
            snapshot = self.snapshot(provider)
            status = self.status(provider)
            providers[provider.value] = {
                "enabled": self.is_enabled(provider),
                "snapshot": snapshot.to_dict() if snapshot else None,
                "error": self.error(provider) or "",
                "status": status.to_dict() if status else None,
                "version": self.version(provider) or "",
            }
        with self._lock:
            credits = self.credits.to_dict() if self.credits else None
            credits_error = self.last_credits_error or ""
        return {
            "refreshing": self.is_refreshing,
            "last_refreshed_at": format_iso8601(self.last_refreshed_at),
            "refresh_frequency": self.settings.refresh_frequency.value,
            "providers": providers,
            "credits": credits,
            "credits_error": credits_error,
            "claude_subscription": self.is_claude_subscription(),
            "openai_dashboard": self._reconciler.view() if self._reconciler else None,
        }
