from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

import yaml

from usage_models import Provider

LOG = logging.getLogger(__name__)

ENV_CONFIG_PATH = "USAGE_WATCH_CONFIG"
ENV_SERVER_HOME = "USAGE_WATCH_SERVER_HOME"
ENV_REFRESH = "USAGE_WATCH_REFRESH"
ENV_CACHE_DIR = "USAGE_WATCH_CACHE_DIR"
ENV_LOG_LEVEL = "USAGE_WATCH_LOG_LEVEL"

DEFAULT_CACHE_DIR = "~/.cache/usage-watch"
DEFAULT_STATUS_PAGES: dict[Provider, str | None] = {
    Provider.CODEX: "https://status.openai.com",
    Provider.CLAUDE: "https://status.anthropic.com",
    Provider.GEMINI: None,
}

_TRUE_VALUES = {"1", "true", "yes", "on"}


class RefreshFrequency(str, Enum):
    MANUAL = "manual"
    ONE_MINUTE = "1m"
    TWO_MINUTES = "2m"
    FIVE_MINUTES = "5m"
    FIFTEEN_MINUTES = "15m"

    @property
    def seconds(self) -> float | None:
        return _FREQUENCY_SECONDS[self]

    @classmethod
    def parse(cls, raw: object, default: "RefreshFrequency") -> "RefreshFrequency":
        text = str(raw).strip().lower() if raw is not None else ""
        if not text:
            return default
        for item in cls:
            if text in {item.value, item.name.lower()}:
                return item
        LOG.warning("Unknown refresh frequency %r; using %s", raw, default.value)
        return default


_FREQUENCY_SECONDS = {
    RefreshFrequency.MANUAL: None,
    RefreshFrequency.ONE_MINUTE: 60.0,
    RefreshFrequency.TWO_MINUTES: 120.0,
    RefreshFrequency.FIVE_MINUTES: 300.0,
    RefreshFrequency.FIFTEEN_MINUTES: 900.0,
}


def parse_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


def _parse_float(value: object, default: float, *, minimum: float, maximum: float) -> float:
    try:
        parsed = float(value) if value is not None else default
    except (TypeError, ValueError):
        return default
    return max(minimum, min(maximum, parsed))


def _parse_providers(raw: object) -> frozenset[Provider] | None:
    if raw is None:
        return None
    items = raw.split(",") if isinstance(raw, str) else raw
    if not isinstance(items, (list, tuple)):
        return None
    enabled: set[Provider] = set()
    for item in items:
        try:
            enabled.add(Provider(str(item).strip().lower()))
        except ValueError:
            LOG.warning("Ignoring unknown provider %r in config", item)
    return frozenset(enabled)


@dataclass(frozen=True)
class Settings:
    refresh_frequency: RefreshFrequency = RefreshFrequency.FIVE_MINUTES
    enabled_providers: frozenset[Provider] | None = None
    status_checks_enabled: bool = True
    session_quota_notifications_enabled: bool = True
    openai_dashboard_enabled: bool = False
    depletion_epsilon: float = 0.0
    cookie_import_cooldown_seconds: float = 300.0
    fetch_timeout_seconds: float = 45.0
    cli_timeout_seconds: float = 30.0
    shell_capture_timeout_seconds: float = 2.0
    cache_dir: Path = field(default_factory=lambda: Path(DEFAULT_CACHE_DIR).expanduser())
    status_pages: Mapping[Provider, str | None] = field(default_factory=lambda: dict(DEFAULT_STATUS_PAGES))
    cli_args: Mapping[Provider, list[str]] = field(default_factory=dict)
    browser_cookie_order: list[str] | None = None

    def is_provider_enabled(self, provider: Provider) -> bool:
        if self.enabled_providers is None:
            return provider is Provider.CODEX
        return provider in self.enabled_providers

    def with_enabled_providers(self, providers: frozenset[Provider]) -> "Settings":
        return replace(self, enabled_providers=providers)

    @classmethod
    def from_config(cls, config: Mapping[str, Any], env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env
        defaults = cls()

        pages = dict(DEFAULT_STATUS_PAGES)
        raw_pages = config.get("status_pages") or {}
        if isinstance(raw_pages, dict):
            for key, value in raw_pages.items():
                try:
                    pages[Provider(str(key))] = (str(value).strip() or None) if value else None
                except ValueError:
                    LOG.warning("Ignoring status page for unknown provider %r", key)

        cli_args: dict[Provider, list[str]] = {}
        raw_args = config.get("cli_args") or {}
        if isinstance(raw_args, dict):
            for key, value in raw_args.items():
                try:
                    provider = Provider(str(key))
                except ValueError:
                    continue
                if isinstance(value, list):
                    cli_args[provider] = [str(item) for item in value]

        order = config.get("browser_cookie_order")
        cache_dir = env.get(ENV_CACHE_DIR) or config.get("cache_dir") or DEFAULT_CACHE_DIR
        return cls(
            refresh_frequency=RefreshFrequency.parse(
                env.get(ENV_REFRESH) or config.get("refresh_frequency"), defaults.refresh_frequency
            ),
            enabled_providers=_parse_providers(config.get("providers")),
            status_checks_enabled=parse_bool(config.get("status_checks_enabled"), True),
            session_quota_notifications_enabled=parse_bool(
                config.get("session_quota_notifications_enabled"), True
            ),
            openai_dashboard_enabled=parse_bool(config.get("openai_dashboard_enabled"), False),
            depletion_epsilon=_parse_float(config.get("depletion_epsilon"), 0.0, minimum=0.0, maximum=5.0),
            cookie_import_cooldown_seconds=_parse_float(
                config.get("cookie_import_cooldown_seconds"), 300.0, minimum=30.0, maximum=86400.0
            ),
            fetch_timeout_seconds=_parse_float(config.get("fetch_timeout_seconds"), 45.0, minimum=5.0, maximum=300.0),
            cli_timeout_seconds=_parse_float(config.get("cli_timeout_seconds"), 30.0, minimum=3.0, maximum=240.0),
            shell_capture_timeout_seconds=_parse_float(
                config.get("shell_capture_timeout_seconds"), 2.0, minimum=0.5, maximum=30.0
            ),
            cache_dir=Path(str(cache_dir)).expanduser(),
            status_pages=pages,
            cli_args=cli_args,
            browser_cookie_order=[str(item).strip().lower() for item in order] if isinstance(order, list) else None,
        )


def load_config(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        return {}
    raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    return raw if isinstance(raw, dict) else {}


def resolve_config_path() -> Path:
    explicit = os.environ.get(ENV_CONFIG_PATH, "").strip()
    if explicit:
        return Path(explicit).expanduser().resolve()
    server_home = Path(
        os.environ.get(ENV_SERVER_HOME, Path(__file__).resolve().parents[1].as_posix())
    ).resolve()
    return server_home / "config.yaml"


def load_settings(config_path: Path) -> Settings:
    try:
        config = load_config(config_path)
    except (OSError, yaml.YAMLError) as exc:
        LOG.warning("Config %s could not be read (%s); using defaults", config_path, exc)
        config = {}
    return Settings.from_config(config)
