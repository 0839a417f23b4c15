"""Analytics ingestion data models."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime

TRACKED_METRICS = ("sessions", "total_users", "conversions", "engagement_rate", "bounce_rate")

# GA4 Data API metric name -> MetricSample attribute
GA4_METRICS = {
    "sessions": "sessions",
    "totalUsers": "total_users",
    "conversions": "conversions",
    "engagementRate": "engagement_rate",
    "bounceRate": "bounce_rate",
}


@dataclass(frozen=True, slots=True)
class MetricSample:
    date: date
    sessions: float = 0.0
    total_users: float = 0.0
    conversions: float = 0.0
    engagement_rate: float = 0.0
    bounce_rate: float = 0.0

    def value(self, metric: str) -> float:
        return float(getattr(self, metric) or 0.0)


@dataclass(slots=True)
class MetricsFetch:
    has_data: bool
    daily: list[MetricSample] = field(default_factory=list)
    new_access_token: str | None = None
    new_token_expires_at: datetime | None = None
    new_refresh_token: str | None = None
    token_refreshed: bool = False


@dataclass(slots=True)
class TokenGrant:
    access_token: str
    expires_at: datetime
    refresh_token: str | None = None


@dataclass(frozen=True, slots=True)
class ConnectionCredential:
    id: int
    user_id: str
    property_id: str
    access_token: str
    refresh_token: str
    expires_at: datetime
    is_active: bool = True
    created_at: datetime | None = None

    def rotated(self, access_token: str, expires_at: datetime | None = None, refresh_token: str | None = None) -> "ConnectionCredential":
        return replace(
            self,
            access_token=access_token,
            expires_at=expires_at or self.expires_at,
            refresh_token=refresh_token or self.refresh_token,
        )
