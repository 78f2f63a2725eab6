from __future__ import annotations

import http.client
import json
import urllib.error
import urllib.request
from typing import Any

from fetch_errors import MalformedOutput, NetworkFailure
from usage_models import ProviderStatus, StatusIndicator
from utils.timefmt import parse_iso8601

STATUS_API_PATH = "api/v2/status.json"
STATUS_TIMEOUT_SECONDS = 10


def status_api_url(base_url: str) -> str:
    return f"{base_url.rstrip('/')}/{STATUS_API_PATH}"


def parse_status_payload(payload: Any) -> ProviderStatus:
    if not isinstance(payload, dict):
        raise MalformedOutput("status payload must be a JSON object")
    status = payload.get("status")
    if not isinstance(status, dict) or "indicator" not in status:
        raise MalformedOutput("status payload is missing status.indicator")

    description = status.get("description")
    page = payload.get("page")
    updated_raw = page.get("updated_at") if isinstance(page, dict) else None
    return ProviderStatus(
        indicator=StatusIndicator.parse(status.get("indicator")),
        description=description.strip() if isinstance(description, str) and description.strip() else None,
        updated_at=parse_iso8601(updated_raw) if isinstance(updated_raw, str) else None,
    )


def fetch_status(base_url: str, *, timeout: int = STATUS_TIMEOUT_SECONDS) -> ProviderStatus:
    req = urllib.request.Request(
        status_api_url(base_url),
        headers={"Accept": "application/json", "User-Agent": "usage-watch-mcp"},
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            data = resp.read()
    except urllib.error.HTTPError as exc:
        raise NetworkFailure(f"Status page returned HTTP {exc.code}") from exc
    except (urllib.error.URLError, http.client.HTTPException, TimeoutError, OSError) as exc:
        raise NetworkFailure(f"Status page unreachable: {exc}") from exc
    try:
        decoded = json.loads(data.decode("utf-8", errors="replace"))
    except json.JSONDecodeError as exc:
        raise MalformedOutput("Status page returned invalid JSON") from exc
    return parse_status_payload(decoded)
