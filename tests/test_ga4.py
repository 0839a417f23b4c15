from datetime import date, datetime, timedelta, timezone

import httpx
import pytest
import respx

from metricpulse.db.store import SubscriberStore
from metricpulse.ingest.credentials import CredentialRefresher
from metricpulse.ingest.ga4 import (
    REPORT_ENDPOINT,
    TOKEN_ENDPOINT,
    CredentialRefreshError,
    GA4Client,
    MetricsFetchError,
    parse_report,
)
from metricpulse.ingest.models import MetricsFetch

REPORT_URL = REPORT_ENDPOINT.format(property_id="prop-1")
START = date(2024, 1, 1)
END = date(2024, 1, 2)

REPORT = {
    "metricHeaders": [
        {"name": "sessions"},
        {"name": "totalUsers"},
        {"name": "conversions"},
        {"name": "engagementRate"},
        {"name": "bounceRate"},
    ],
    "rows": [
        {
            "dimensionValues": [{"value": "20240102"}],
            "metricValues": [{"value": "120"}, {"value": "90"}, {"value": "4"}, {"value": "0.61"}, {"value": "0.39"}],
        },
        {
            "dimensionValues": [{"value": "20240101"}],
            "metricValues": [{"value": "100"}, {"value": "80"}, {"value": "3"}, {"value": "0.6"}, {"value": ""}],
        },
    ],
}


def test_parse_report_sorts_and_coerces():
    samples = parse_report(REPORT)
    assert [sample.date for sample in samples] == [START, END]
    assert samples[0].sessions == 100
    assert samples[0].bounce_rate == 0.0
    assert samples[1].engagement_rate == pytest.approx(0.61)


def test_parse_report_without_rows():
    assert parse_report({}) == []


@pytest.mark.asyncio
async def test_fetch_metrics():
    async with respx.mock(assert_all_called=True) as router:
        route = router.post(REPORT_URL).mock(return_value=httpx.Response(200, json=REPORT))
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.handler)) as session:
            client = GA4Client("id", "secret", session=session)
            fetch = await client.fetch_metrics("prop-1", "token", "refresh", start_date=START, end_date=END)
    assert fetch.has_data
    assert len(fetch.daily) == 2
    assert fetch.new_access_token is None
    assert route.calls.last.request.headers["Authorization"] == "Bearer token"


@pytest.mark.asyncio
async def test_empty_report_has_no_data():
    async with respx.mock(assert_all_called=True) as router:
        router.post(REPORT_URL).mock(return_value=httpx.Response(200, json={"rowCount": 0}))
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.handler)) as session:
            fetch = await GA4Client("id", "secret", session=session).fetch_metrics(
                "prop-1", "token", "refresh", start_date=START, end_date=END
            )
    assert not fetch.has_data
    assert fetch.daily == []


@pytest.mark.asyncio
async def test_unauthorized_refreshes_once_and_reports_rotation():
    async with respx.mock(assert_all_called=True) as router:
        router.post(REPORT_URL).mock(
            side_effect=[httpx.Response(401, json={"error": "expired"}), httpx.Response(200, json=REPORT)]
        )
        token = router.post(TOKEN_ENDPOINT).mock(
            return_value=httpx.Response(200, json={"access_token": "new-token", "expires_in": 3600, "refresh_token": "r2"})
        )
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.handler)) as session:
            fetch = await GA4Client("id", "secret", session=session).fetch_metrics(
                "prop-1", "stale", "refresh", start_date=START, end_date=END
            )
    assert token.call_count == 1
    assert fetch.token_refreshed
    assert fetch.new_access_token == "new-token"
    assert fetch.new_refresh_token == "r2"
    assert fetch.new_token_expires_at > datetime.now(timezone.utc)
    assert fetch.has_data


@pytest.mark.asyncio
async def test_forbidden_is_a_permissions_error():
    async with respx.mock(assert_all_called=True) as router:
        router.post(REPORT_URL).mock(return_value=httpx.Response(403))
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.handler)) as session:
            client = GA4Client("id", "secret", session=session)
            with pytest.raises(MetricsFetchError, match="Insufficient permissions"):
                await client.fetch_metrics("prop-1", "token", "refresh", start_date=START, end_date=END)


@pytest.mark.asyncio
async def test_server_error_is_a_fetch_error():
    async with respx.mock(assert_all_called=True) as router:
        router.post(REPORT_URL).mock(return_value=httpx.Response(500))
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.handler)) as session:
            client = GA4Client("id", "secret", session=session)
            with pytest.raises(MetricsFetchError):
                await client.fetch_metrics("prop-1", "token", "refresh", start_date=START, end_date=END)


@pytest.mark.asyncio
async def test_refresh_rejected():
    async with respx.mock(assert_all_called=True) as router:
        router.post(TOKEN_ENDPOINT).mock(return_value=httpx.Response(400, json={"error": "invalid_grant"}))
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.handler)) as session:
            client = GA4Client("id", "secret", session=session)
            with pytest.raises(CredentialRefreshError):
                await client.refresh_access_token("revoked")


@pytest.mark.asyncio
async def test_refresher_refreshes_expired_credential(engine, subscriber):
    subscriber("alice", token_expires_at=datetime(2020, 1, 1))
    store = SubscriberStore(engine)
    credential = store.load_active_connection("alice")
    async with respx.mock(assert_all_called=True) as router:
        router.post(TOKEN_ENDPOINT).mock(
            return_value=httpx.Response(200, json={"access_token": "fresh", "expires_in": 3600, "refresh_token": "r2"})
        )
        async with httpx.AsyncClient(transport=httpx.MockTransport(router.handler)) as session:
            refresher = CredentialRefresher(GA4Client("id", "secret", session=session), store)
            refreshed = await refresher.ensure_fresh(credential)
    assert refreshed.access_token == "fresh"
    stored = store.load_active_connection("alice")
    assert stored.access_token == "fresh"
    assert stored.refresh_token == "r2"


@pytest.mark.asyncio
async def test_refresher_leaves_valid_credential_alone(engine, subscriber):
    subscriber("alice")
    store = SubscriberStore(engine)
    credential = store.load_active_connection("alice")
    refresher = CredentialRefresher(GA4Client("id", "secret", session=httpx.AsyncClient()), store)
    assert await refresher.ensure_fresh(credential) is credential
    await refresher.client.close()


@pytest.mark.asyncio
async def test_refresher_records_rotation(engine, subscriber):
    subscriber("alice")
    store = SubscriberStore(engine)
    credential = store.load_active_connection("alice")
    expiry = datetime.now(timezone.utc) + timedelta(hours=1)
    fetch = MetricsFetch(
        has_data=True,
        new_access_token="rotated",
        new_token_expires_at=expiry,
        new_refresh_token="refresh-rotated",
        token_refreshed=True,
    )
    refresher = CredentialRefresher(GA4Client("id", "secret", session=httpx.AsyncClient()), store)
    rotated = await refresher.record_rotation(credential, fetch)
    await refresher.client.close()
    assert rotated.access_token == "rotated"
    stored = store.load_active_connection("alice")
    assert stored.access_token == "rotated"
    assert stored.refresh_token == "refresh-rotated"
