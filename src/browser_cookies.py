from __future__ import annotations

import hashlib
import json
import logging
import os
from dataclasses import dataclass
from http.cookiejar import CookieJar
from pathlib import Path
from typing import Callable, Iterable

import browser_cookie3

LOG = logging.getLogger(__name__)

DASHBOARD_COOKIE_DOMAIN = "chatgpt.com"
ENV_COOKIE_ORDER = "USAGE_WATCH_BROWSER_COOKIE_ORDER"

_BROWSER_LOADERS = {
    "safari": "safari",
    "chrome": "chrome",
    "chromium": "chromium",
    "edge": "edge",
    "brave": "brave",
    "firefox": "firefox",
    "opera": "opera",
}


class CookieImportError(RuntimeError):
    pass


class NoMatchingAccount(CookieImportError):
    def __init__(self, found: list[tuple[str, str]]) -> None:
        self.found = list(found)
        super().__init__("no browser session matches the target account")

    def describe(self) -> str:
        if not self.found:
            return "no signed-in session detected in any browser"
        ordered = sorted(self.found, key=lambda item: (item[0], item[1]))
        return " • ".join(f"{source}: {email}" for source, email in ordered)


@dataclass(frozen=True)
class CookieImportResult:
    source_label: str
    cookie_count: int
    signed_in_email: str | None
    matches_target: bool


def normalize_email(value: str | None) -> str | None:
    normalized = (value or "").strip().casefold()
    return normalized or None


def account_key(email: str) -> str:
    return hashlib.sha256((normalize_email(email) or "").encode("utf-8")).hexdigest()[:16]


def _iter_cookie_header(jar: CookieJar) -> list[str]:
    items: list[str] = []
    for cookie in jar:
        if not cookie.name:
            continue
        items.append(f"{cookie.name}={cookie.value}")
    return items


def _load_from_browser(name: str, domain: str) -> CookieJar | None:
    loader_name = _BROWSER_LOADERS.get(name.lower())
    if not loader_name:
        return None
    loader = getattr(browser_cookie3, loader_name, None)
    if loader is None:
        return None
    try:
        return loader(domain_name=domain)
    except Exception as exc:  # browser_cookie3 raises a mix of OS, sqlite and keyring errors
        LOG.debug("Cookie read from %s failed (%s)", name, exc)
        return None


def _order_from_env(env_value: str | None) -> list[str]:
    if not env_value:
        return ["safari", "chrome", "brave", "edge", "chromium", "firefox", "opera"]
    return [item.strip().lower() for item in env_value.split(",") if item.strip()]


class CookieStore:
    """Per-account cookie headers, so several dashboard sessions can coexist."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def _path(self, email: str) -> Path:
        return self.root / f"{account_key(email)}.json"

    def load(self, email: str | None) -> str | None:
        if not normalize_email(email):
            return None
        try:
            payload = json.loads(self._path(email or "").read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return None
        header = payload.get("cookie_header") if isinstance(payload, dict) else None
        return header if isinstance(header, str) and header else None

    def save(self, email: str, cookie_header: str, *, source: str) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        path = self._path(email)
        payload = {"account_email": normalize_email(email), "source": source, "cookie_header": cookie_header}
        path.write_text(json.dumps(payload), encoding="utf-8")
        try:
            path.chmod(0o600)
        except OSError:
            return


class DashboardCookieImporter:
    def __init__(
        self,
        store: CookieStore,
        *,
        session_lookup: Callable[[str], str | None],
        order: Iterable[str] | None = None,
        domain: str = DASHBOARD_COOKIE_DOMAIN,
    ) -> None:
        self.store = store
        self.session_lookup = session_lookup
        self.order = list(order) if order else None
        self.domain = domain

    def import_best_cookies(self, target_email: str, log: Callable[[str], None] | None = None) -> CookieImportResult:
        """Copy the browser session that is signed in as ``target_email`` into the cookie store."""
        log = log or LOG.debug
        target = normalize_email(target_email)
        preferred = self.order or _order_from_env(os.environ.get(ENV_COOKIE_ORDER))
        found: list[tuple[str, str]] = []
        unverified: tuple[str, str, int] | None = None

        for browser in preferred:
            jar = _load_from_browser(browser, self.domain)
            if jar is None:
                continue
            header_parts = _iter_cookie_header(jar)
            if not header_parts:
                continue
            header = "; ".join(header_parts)
            signed_in = normalize_email(self.session_lookup(header))
            log(f"{browser}: {len(header_parts)} cookies, signed in as {signed_in or 'unknown'}")
            if signed_in is None:
                if unverified is None:
                    unverified = (browser, header, len(header_parts))
                continue
            found.append((browser, signed_in))
            if signed_in == target:
                self.store.save(target_email, header, source=browser)
                return CookieImportResult(browser, len(header_parts), signed_in, True)

        if found or unverified is None:
            raise NoMatchingAccount(found)

        browser, header, count = unverified
        self.store.save(target_email, header, source=browser)
        return CookieImportResult(browser, count, None, False)
