from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from browser_cookies import CookieImportError, DashboardCookieImporter, NoMatchingAccount, normalize_email
from fetch_errors import AccountMismatch, LoginRequired, NoDashboardData, UsageFetchError
from openai_dashboard import DashboardCacheStore, DashboardFetcher
from usage_models import DashboardSnapshot
from utils.timefmt import format_stamp

LOG = logging.getLogger(__name__)

# Minimum spacing between non-forced browser cookie imports for the same account.
COOKIE_IMPORT_COOLDOWN_SECONDS = 300.0
DEBUG_LOG_MAX_LINES = 240

LOGIN_REQUIRED_MESSAGE = (
    "OpenAI web access requires a signed-in chatgpt.com session. "
    "Sign in in your browser, then re-enable OpenAI web access."
)


class ReconcilePhase(str, Enum):
    IDLE = "idle"
    ACCOUNT_CHANGED = "account_changed"
    IMPORTING = "importing"
    VERIFYING = "verifying"
    SETTLED = "settled"


@dataclass
class DashboardReconciliationState:
    last_target_email: str | None = None
    requires_login: bool = False
    last_import_attempt_at: float | None = None
    last_import_email: str | None = None
    account_changed: bool = False
    last_good_snapshot: DashboardSnapshot | None = None
    phase: ReconcilePhase = ReconcilePhase.IDLE


def dashboard_email_mismatch(expected: str | None, actual: str | None) -> bool:
    expected_norm = normalize_email(expected)
    actual_norm = normalize_email(actual)
    if expected_norm is None or actual_norm is None:
        return False
    return expected_norm != actual_norm


class DashboardReconciler:
    """Keeps the browser-cookie dashboard pinned to the primary provider's account.

    Each ``reconcile`` pass detects account switches, throttles cookie imports,
    retries a failed or mismatched fetch exactly once after a forced import and
    never leaves another account's data on display.
    """

    def __init__(
        self,
        *,
        fetcher: DashboardFetcher,
        importer: DashboardCookieImporter,
        cache_store: DashboardCacheStore,
        cooldown_seconds: float = COOKIE_IMPORT_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.fetcher = fetcher
        self.importer = importer
        self.cache_store = cache_store
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._lock = threading.RLock()
        self.state = DashboardReconciliationState()
        self.dashboard: DashboardSnapshot | None = None
        self.error: str | None = None
        self.cookie_import_status: str | None = None
        self._debug_lines: deque[str] = deque(maxlen=DEBUG_LOG_MAX_LINES)

    # -- public ---------------------------------------------------------------

    def reconcile(self, *, enabled: bool, target_email: str | None) -> None:
        with self._lock:
            if not enabled:
                self._clear()
                return
            self._reconcile(target_email)

    def import_now(self, target_email: str | None) -> None:
        with self._lock:
            self._debug_lines.clear()
            self._log("manual import start")
            self._import_cookies(target_email, force=True)

    def handle_target_change(self, target_email: str | None) -> None:
        normalized = normalize_email(target_email)
        if normalized is None:
            return
        with self._lock:
            previous = self.state.last_target_email
            self.state.last_target_email = normalized
            if previous is None or previous == normalized:
                return
            LOG.info("Primary account changed: %s -> %s; clearing dashboard", previous, normalized)
            self._log(f"account changed: {previous} -> {normalized}; clearing dashboard snapshot")
            self.state.phase = ReconcilePhase.ACCOUNT_CHANGED
            self.state.account_changed = True
            self.state.requires_login = True
            self.state.last_good_snapshot = None
            self.state.last_import_attempt_at = None
            self.state.last_import_email = None
            self.dashboard = None
            self.error = None
            self.cookie_import_status = "Account changed; importing browser cookies…"

    @property
    def requires_login(self) -> bool:
        return self.state.requires_login

    @property
    def debug_log(self) -> str:
        return "\n".join(self._debug_lines)

    def view(self) -> dict[str, Any]:
        with self._lock:
            return {
                "dashboard": self.dashboard.to_dict() if self.dashboard else None,
                "error": self.error or "",
                "requires_login": self.state.requires_login,
                "cookie_import_status": self.cookie_import_status or "",
                "phase": self.state.phase.value,
                "target_email": self.state.last_target_email or "",
            }

    # -- flow -----------------------------------------------------------------

    def _reconcile(self, target_email: str | None) -> None:
        self.handle_target_change(target_email)
        normalized = normalize_email(target_email)
        self._log(f"refresh start (target={normalized or 'unknown'})")

        if self.state.last_good_snapshot is None and normalized is not None:
            cached = self.cache_store.load(normalized)
            if cached is not None and not dashboard_email_mismatch(normalized, cached.signed_in_email):
                self._log("loaded cached dashboard snapshot")
                self.state.last_good_snapshot = cached

        if self.state.account_changed and normalized is not None:
            self._import_cookies(target_email, force=True)
            self.state.account_changed = False
        else:
            self._import_cookies(target_email, force=False)

        self.state.phase = ReconcilePhase.VERIFYING
        retried = False
        try:
            dash = self._fetch(target_email)
        except (LoginRequired, NoDashboardData) as exc:
            self._log(f"fetch failed ({exc.code}); importing cookies and retrying once")
            self._import_cookies(target_email, force=True)
            dash = self._retry(target_email)
            if dash is None:
                return
            retried = True
        except UsageFetchError as exc:
            self._apply_failure(str(exc))
            return

        # One forced import and retry per pass.
        if not retried and dashboard_email_mismatch(normalized, dash.signed_in_email):
            self._log(f"signed in as {dash.signed_in_email}, expected {normalized}; importing cookies")
            self._import_cookies(target_email, force=True)
            second = self._retry(target_email)
            if second is None:
                return
            dash = second

        if dashboard_email_mismatch(normalized, dash.signed_in_email):
            signed_in = (dash.signed_in_email or "unknown").strip()
            self._log(f"still signed in as {signed_in}; hiding dashboard")
            self.dashboard = None
            self.state.requires_login = True
            self.state.phase = ReconcilePhase.IDLE
            mismatch = AccountMismatch(
                f"OpenAI dashboard signed in as {signed_in}, but Codex uses {normalized}. "
                "Switch accounts in your browser and re-enable OpenAI web access."
            )
            LOG.info("Dashboard hidden (%s): %s", mismatch.code, signed_in)
            self.error = str(mismatch)
            return

        self._apply(dash, normalized)

    def _fetch(self, target_email: str | None) -> DashboardSnapshot:
        return self.fetcher.load_latest_dashboard(target_email, log=self._log)

    def _retry(self, target_email: str | None) -> DashboardSnapshot | None:
        self.state.phase = ReconcilePhase.VERIFYING
        try:
            return self._fetch(target_email)
        except LoginRequired:
            self._log("retry still requires login")
            self.error = LOGIN_REQUIRED_MESSAGE
            self.dashboard = self.state.last_good_snapshot
            self.state.requires_login = True
            self.state.phase = ReconcilePhase.IDLE
        except UsageFetchError as exc:
            self._apply_failure(str(exc))
        return None

    def _import_cookies(self, target_email: str | None, *, force: bool) -> None:
        target = (target_email or "").strip()
        if not target:
            return
        now = self._clock()
        if not force:
            last_attempt = self.state.last_import_attempt_at
            changed_target = normalize_email(self.state.last_import_email) != normalize_email(target)
            cooled_down = last_attempt is None or (now - last_attempt) > self.cooldown_seconds
            if not (self.state.requires_login and (changed_target or cooled_down)):
                return
        self.state.last_import_email = target
        self.state.last_import_attempt_at = now
        self.state.phase = ReconcilePhase.IMPORTING
        self._log(f"import start (target={target}, forced={force})")

        try:
            result = self.importer.import_best_cookies(target, log=self._log)
        except NoMatchingAccount as exc:
            found = exc.describe()
            self._log(f"import mismatch: {found}")
            self.cookie_import_status = f"Browser cookies do not match Codex account ({target}). Found {found}."
            self.state.requires_login = True
            self.dashboard = None
            return
        except (CookieImportError, OSError) as exc:
            self._log(f"import failed: {exc}")
            self.cookie_import_status = f"Browser cookie import failed: {exc}"
            return

        status = f"Using {result.source_label} cookies ({result.cookie_count})."
        if result.signed_in_email:
            match_text = "matches Codex" if result.matches_target else "does not match Codex"
            status = f"{status} Signed in as {result.signed_in_email} ({match_text})."
        self.cookie_import_status = status

    def _apply(self, dash: DashboardSnapshot, normalized: str | None) -> None:
        self.dashboard = dash
        self.error = None
        self.state.last_good_snapshot = dash
        self.state.requires_login = False
        self.state.phase = ReconcilePhase.SETTLED
        self._log("dashboard settled")
        if normalized:
            try:
                self.cache_store.save(normalized, dash)
            except OSError as exc:
                LOG.warning("Dashboard cache write failed (%s)", exc)

    def _apply_failure(self, message: str) -> None:
        cached = self.state.last_good_snapshot
        self.state.phase = ReconcilePhase.IDLE
        if cached is not None:
            self.dashboard = cached
            stamp = format_stamp(cached.updated_at)
            self.error = f"Last OpenAI dashboard refresh failed: {message}. Cached values from {stamp}."
        else:
            self.dashboard = None
            self.error = message

    def _clear(self) -> None:
        self.state = DashboardReconciliationState()
        self.dashboard = None
        self.error = None
        self.cookie_import_status = None
        self._debug_lines.clear()

    def _log(self, message: str) -> None:
        LOG.debug("openai-web: %s", message)
        self._debug_lines.append(message)
