from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from path_environment import (
    CLAUDE_OVERRIDE_KEY,
    CODEX_OVERRIDE_KEY,
    GEMINI_OVERRIDE_KEY,
    resolve_claude_binary,
    resolve_codex_binary,
    resolve_gemini_binary,
)
from providers import claude, codex, gemini
from providers.claude import ClaudeFetcher
from providers.cli import CliRunner
from providers.codex import CodexFetcher
from providers.gemini import GeminiFetcher
from settings import Settings
from usage_models import Provider, UsageSnapshot


@dataclass(frozen=True)
class ProviderMetadata:
    provider: Provider
    display_name: str
    cli_name: str
    override_key: str
    status_page_url: str | None
    resolve_binary: Callable[[], str | None]
    version_args: tuple[str, ...] = ("--version",)


@dataclass(frozen=True)
class ProviderSpec:
    metadata: ProviderMetadata
    is_enabled: Callable[[], bool]
    fetch: Callable[[], UsageSnapshot]


def build_metadata(settings: Settings) -> dict[Provider, ProviderMetadata]:
    pages = settings.status_pages
    return {
        Provider.CODEX: ProviderMetadata(
            provider=Provider.CODEX,
            display_name="Codex",
            cli_name="codex",
            override_key=CODEX_OVERRIDE_KEY,
            status_page_url=pages.get(Provider.CODEX),
            resolve_binary=resolve_codex_binary,
            version_args=codex.DEFAULT_VERSION_ARGS,
        ),
        Provider.CLAUDE: ProviderMetadata(
            provider=Provider.CLAUDE,
            display_name="Claude",
            cli_name="claude",
            override_key=CLAUDE_OVERRIDE_KEY,
            status_page_url=pages.get(Provider.CLAUDE),
            resolve_binary=resolve_claude_binary,
        ),
        Provider.GEMINI: ProviderMetadata(
            provider=Provider.GEMINI,
            display_name="Gemini",
            cli_name="gemini",
            override_key=GEMINI_OVERRIDE_KEY,
            status_page_url=pages.get(Provider.GEMINI),
            resolve_binary=resolve_gemini_binary,
        ),
    }


def build_fetchers(settings: Settings, runner: CliRunner) -> tuple[CodexFetcher, ClaudeFetcher, GeminiFetcher]:
    timeout = settings.cli_timeout_seconds
    args = settings.cli_args
    return (
        CodexFetcher(runner, timeout_seconds=timeout, usage_args=args.get(Provider.CODEX, codex.DEFAULT_USAGE_ARGS)),
        ClaudeFetcher(runner, timeout_seconds=timeout, usage_args=args.get(Provider.CLAUDE, claude.DEFAULT_USAGE_ARGS)),
        GeminiFetcher(runner, timeout_seconds=timeout, usage_args=args.get(Provider.GEMINI, gemini.DEFAULT_USAGE_ARGS)),
    )


def build_specs(
    *,
    metadata: dict[Provider, ProviderMetadata],
    is_enabled: Callable[[Provider], bool],
    codex_fetcher: CodexFetcher,
    claude_fetcher: ClaudeFetcher,
    gemini_fetcher: GeminiFetcher,
) -> dict[Provider, ProviderSpec]:
    fetchers: dict[Provider, Callable[[], UsageSnapshot]] = {
        Provider.CODEX: codex_fetcher.load_latest_usage,
        Provider.CLAUDE: claude_fetcher.load_latest_usage,
        Provider.GEMINI: gemini_fetcher.load_latest_usage,
    }
    return {
        provider: ProviderSpec(
            metadata=metadata[provider],
            is_enabled=lambda p=provider: is_enabled(p),
            fetch=fetchers[provider],
        )
        for provider in Provider
    }
