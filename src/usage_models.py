from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from utils.timefmt import format_iso8601, parse_iso8601


class Provider(str, Enum):
    CODEX = "codex"
    CLAUDE = "claude"
    GEMINI = "gemini"


PRIMARY_PROVIDER = Provider.CODEX


@dataclass(frozen=True)
class RateWindow:
    used_percent: float
    remaining_percent: float
    resets_at: datetime | None = None
    reset_description: str | None = None
    window_minutes: int | None = None

    @classmethod
    def from_used(cls, used_percent: float, **kwargs: Any) -> "RateWindow":
        used = max(0.0, min(100.0, float(used_percent)))
        return cls(used_percent=used, remaining_percent=max(0.0, 100.0 - used), **kwargs)

    @classmethod
    def from_remaining(cls, remaining_percent: float, **kwargs: Any) -> "RateWindow":
        remaining = max(0.0, min(100.0, float(remaining_percent)))
        return cls(used_percent=max(0.0, 100.0 - remaining), remaining_percent=remaining, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "used_percent": round(self.used_percent, 3),
            "remaining_percent": round(self.remaining_percent, 3),
            "resets_at": format_iso8601(self.resets_at),
            "reset_description": self.reset_description or "",
            "window_minutes": self.window_minutes,
        }


@dataclass(frozen=True)
class UsageSnapshot:
    primary: RateWindow
    secondary: RateWindow
    updated_at: datetime
    tertiary: RateWindow | None = None
    account_email: str | None = None
    account_organization: str | None = None
    login_method: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "primary": self.primary.to_dict(),
            "secondary": self.secondary.to_dict(),
            "tertiary": self.tertiary.to_dict() if self.tertiary else None,
            "updated_at": format_iso8601(self.updated_at),
            "account_email": self.account_email or "",
            "account_organization": self.account_organization or "",
            "login_method": self.login_method or "",
        }


@dataclass(frozen=True)
class CreditsSnapshot:
    remaining: float
    updated_at: datetime
    events: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "remaining": self.remaining,
            "updated_at": format_iso8601(self.updated_at),
            "events": list(self.events),
        }


class StatusIndicator(str, Enum):
    NONE = "none"
    MINOR = "minor"
    MAJOR = "major"
    CRITICAL = "critical"
    MAINTENANCE = "maintenance"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, raw: object) -> "StatusIndicator":
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            return cls.UNKNOWN

    @property
    def has_issue(self) -> bool:
        return self is not StatusIndicator.NONE

    @property
    def label(self) -> str:
        return _INDICATOR_LABELS[self]


_INDICATOR_LABELS = {
    StatusIndicator.NONE: "Operational",
    StatusIndicator.MINOR: "Partial outage",
    StatusIndicator.MAJOR: "Major outage",
    StatusIndicator.CRITICAL: "Critical issue",
    StatusIndicator.MAINTENANCE: "Maintenance",
    StatusIndicator.UNKNOWN: "Status unknown",
}


@dataclass(frozen=True)
class ProviderStatus:
    indicator: StatusIndicator
    description: str | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "indicator": self.indicator.value,
            "label": self.indicator.label,
            "description": self.description or "",
            "updated_at": format_iso8601(self.updated_at),
        }


@dataclass(frozen=True)
class DashboardSnapshot:
    signed_in_email: str | None
    updated_at: datetime
    code_review_remaining_percent: float | None = None
    usage_breakdown: list[dict[str, Any]] = field(default_factory=list)
    credit_events: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["updated_at"] = format_iso8601(self.updated_at)
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "DashboardSnapshot":
        updated_at = parse_iso8601(str(payload.get("updated_at", "")))
        if updated_at is None:
            raise ValueError("dashboard snapshot is missing updated_at")
        remaining = payload.get("code_review_remaining_percent")
        return cls(
            signed_in_email=payload.get("signed_in_email") or None,
            updated_at=updated_at,
            code_review_remaining_percent=float(remaining) if isinstance(remaining, (int, float)) else None,
            usage_breakdown=list(payload.get("usage_breakdown") or []),
            credit_events=list(payload.get("credit_events") or []),
        )
