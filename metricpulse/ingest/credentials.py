"""Lazy access-token refresh for analytics connections."""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Callable
from datetime import datetime

from metricpulse.db.store import SubscriberStore
from metricpulse.ingest.ga4 import GA4Client
from metricpulse.ingest.models import ConnectionCredential, MetricsFetch
from metricpulse.utils.dates import ensure_utc, utc_now

logger = logging.getLogger(__name__)


class CredentialRefresher:
    """Keeps the stored credential equal to the token last used successfully."""

    def __init__(self, client: GA4Client, store: SubscriberStore, *, clock: Callable[[], datetime] = utc_now) -> None:
        self.client = client
        self.store = store
        self._clock = clock

    async def ensure_fresh(self, credential: ConnectionCredential) -> ConnectionCredential:
        """Return ``credential`` untouched, or refreshed and persisted if it has expired.

        Refresh failures propagate to the caller.
        """
        if ensure_utc(self._clock()) < ensure_utc(credential.expires_at):
            return credential
        logger.info("Refreshing expired token for user %s", credential.user_id)
        grant = await self.client.refresh_access_token(credential.refresh_token)
        refreshed = credential.rotated(grant.access_token, grant.expires_at, grant.refresh_token)
        await self._save(refreshed)
        return refreshed

    async def record_rotation(self, credential: ConnectionCredential, fetch: MetricsFetch) -> ConnectionCredential:
        """Persist a token the metrics fetch rotated on its own."""
        if not fetch.new_access_token:
            return credential
        rotated = credential.rotated(fetch.new_access_token, fetch.new_token_expires_at, fetch.new_refresh_token)
        await self._save(rotated)
        logger.info("Saved rotated token for user %s", credential.user_id)
        return rotated

    async def _save(self, credential: ConnectionCredential) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, functools.partial(self.store.save_credential, credential))
