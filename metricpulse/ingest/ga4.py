"""Google Analytics 4 Data API client."""

from __future__ import annotations

import logging
import os
from datetime import date, timedelta
from typing import Any

import httpx

from metricpulse.ingest.models import GA4_METRICS, MetricSample, MetricsFetch, TokenGrant
from metricpulse.utils.dates import format_date, parse_compact_date, utc_now
from metricpulse.utils.retry import retry_async

logger = logging.getLogger(__name__)

TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
REPORT_ENDPOINT = "https://analyticsdata.googleapis.com/v1beta/properties/{property_id}:runReport"


class CredentialRefreshError(RuntimeError):
    """The OAuth provider refused to mint a new access token."""


class MetricsFetchError(RuntimeError):
    """The Data API call failed for a reason other than a stale token."""


class GA4Client:
    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        *,
        session: httpx.AsyncClient | None = None,
    ) -> None:
        self.client_id = client_id or os.environ.get("GA4_CLIENT_ID", "")
        self.client_secret = client_secret or os.environ.get("GA4_CLIENT_SECRET", "")
        self.session = session or httpx.AsyncClient(timeout=30.0)

    async def close(self) -> None:
        await self.session.aclose()

    async def refresh_access_token(self, refresh_token: str) -> TokenGrant:
        data = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": self.client_id,
            "client_secret": self.client_secret,
        }
        try:
            response = await retry_async(self.session.post)(TOKEN_ENDPOINT, data=data)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise CredentialRefreshError(f"Failed to refresh access token: {exc}") from exc
        payload = response.json()
        if "access_token" not in payload:
            raise CredentialRefreshError("Token response missing access_token")
        return TokenGrant(
            access_token=payload["access_token"],
            expires_at=utc_now() + timedelta(seconds=int(payload.get("expires_in", 3600))),
            refresh_token=payload.get("refresh_token"),
        )

    async def fetch_metrics(
        self,
        property_id: str,
        access_token: str,
        refresh_token: str,
        *,
        start_date: date,
        end_date: date,
    ) -> MetricsFetch:
        """Daily metrics for ``property_id``; a stale token is refreshed once and reported back."""
        response = await self._run_report(property_id, access_token, start_date, end_date)
        grant: TokenGrant | None = None
        if response.status_code == 401:
            logger.info("Access token for property %s expired, refreshing", property_id)
            grant = await self.refresh_access_token(refresh_token)
            response = await self._run_report(property_id, grant.access_token, start_date, end_date)
        if response.status_code == 403:
            raise MetricsFetchError("Insufficient permissions - check GA4 access")
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise MetricsFetchError(f"GA4 report failed for property {property_id}: {exc}") from exc
        daily = parse_report(response.json())
        logger.info("Fetched %s days of data for property %s", len(daily), property_id)
        result = MetricsFetch(has_data=bool(daily), daily=daily)
        if grant is not None:
            result.new_access_token = grant.access_token
            result.new_token_expires_at = grant.expires_at
            result.new_refresh_token = grant.refresh_token
            result.token_refreshed = True
        return result

    async def _run_report(self, property_id: str, access_token: str, start_date: date, end_date: date) -> httpx.Response:
        body = {
            "dateRanges": [{"startDate": format_date(start_date), "endDate": format_date(end_date)}],
            "metrics": [{"name": name} for name in GA4_METRICS],
            "dimensions": [{"name": "date"}],
            "orderBys": [{"dimension": {"dimensionName": "date"}}],
            "keepEmptyRows": False,
        }
        headers = {"Authorization": f"Bearer {access_token}"}
        url = REPORT_ENDPOINT.format(property_id=property_id)
        try:
            return await retry_async(self.session.post)(url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise MetricsFetchError(f"GA4 request failed for property {property_id}: {exc}") from exc


def parse_report(payload: dict[str, Any]) -> list[MetricSample]:
    rows = payload.get("rows") or []
    headers = [header["name"] for header in payload.get("metricHeaders", [])]
    samples: list[MetricSample] = []
    for row in rows:
        values: dict[str, float] = {}
        for name, cell in zip(headers, row.get("metricValues", [])):
            field_name = GA4_METRICS.get(name)
            if field_name is None:
                continue
            try:
                values[field_name] = float(cell.get("value") or 0)
            except (TypeError, ValueError):
                values[field_name] = 0.0
        day = parse_compact_date(row["dimensionValues"][0]["value"])
        samples.append(MetricSample(date=day, **values))
    samples.sort(key=lambda sample: sample.date)
    return samples
