from __future__ import annotations

from datetime import datetime
from typing import Any, Sequence

from fetch_errors import MalformedOutput
from path_environment import resolve_gemini_binary
from providers.cli import CliRunner
from usage_models import RateWindow, UsageSnapshot
from utils.json_payload import as_float, clean_text
from utils.timefmt import now_utc, parse_iso8601

DEFAULT_USAGE_ARGS = ("--output-format", "json", "-p", "/stats")
CLI_ENV = {
    "NO_BROWSER": "true",
    "GEMINI_DEFAULT_AUTH_TYPE": "oauth-personal",
}


def summarize_quota_buckets(payload: dict[str, Any]) -> list[dict[str, Any]]:
    """Collapse quota buckets to the lowest remaining percent per model."""
    buckets = payload.get("buckets")
    if not isinstance(buckets, list):
        return []
    by_model: dict[str, dict[str, Any]] = {}
    for bucket in buckets:
        if not isinstance(bucket, dict):
            continue
        model_id = clean_text(bucket.get("modelId"))
        fraction = as_float(bucket.get("remainingFraction"))
        if not model_id or fraction is None:
            continue
        percent_left = round(max(0.0, min(1.0, fraction)) * 100.0, 3)
        current = by_model.get(model_id)
        if current is None or percent_left < current["percent_left"]:
            by_model[model_id] = {
                "model_id": model_id,
                "percent_left": percent_left,
                "reset_time": clean_text(bucket.get("resetTime")) or "",
            }
    return sorted(by_model.values(), key=lambda item: item["model_id"])


def _lowest(models: list[dict[str, Any]]) -> RateWindow | None:
    if not models:
        return None
    lowest = min(models, key=lambda item: item["percent_left"])
    return RateWindow.from_remaining(
        lowest["percent_left"],
        resets_at=parse_iso8601(lowest["reset_time"]),
        reset_description=lowest["model_id"],
        window_minutes=24 * 60,
    )


def parse_usage(payload: dict[str, Any], *, now: datetime | None = None) -> UsageSnapshot:
    models = summarize_quota_buckets(payload)
    if not models:
        raise MalformedOutput("gemini stats did not include any quota buckets")
    overall = _lowest(models)
    pro = _lowest([item for item in models if "pro" in item["model_id"].lower()]) or overall
    flash = _lowest([item for item in models if "flash" in item["model_id"].lower()]) or overall
    return UsageSnapshot(
        primary=pro,
        secondary=flash,
        updated_at=now or now_utc(),
        account_email=clean_text(payload.get("account_email")),
        login_method=clean_text(payload.get("tier")),
    )


class GeminiFetcher:
    def __init__(self, runner: CliRunner, *, timeout_seconds: float, usage_args: Sequence[str] = DEFAULT_USAGE_ARGS) -> None:
        self.runner = runner
        self.timeout_seconds = timeout_seconds
        self.usage_args = list(usage_args)

    def load_latest_usage(self) -> UsageSnapshot:
        payload = self.runner.run_json(
            resolve_gemini_binary(),
            self.usage_args,
            timeout=self.timeout_seconds,
            tool="gemini",
            env=CLI_ENV,
        )
        return parse_usage(payload)
