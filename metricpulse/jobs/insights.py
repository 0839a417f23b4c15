"""Hourly insight delivery job."""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from dotenv import load_dotenv
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from metricpulse.db.recorder import DeliveryRecorder
from metricpulse.db.session import create_engine_from_env
from metricpulse.db.store import SubscriberProfile, SubscriberStore
from metricpulse.email.render import insights_message, processing_message
from metricpulse.email.sender import NotificationSender, SendAttempt, SendOutcome
from metricpulse.ingest.credentials import CredentialRefresher
from metricpulse.ingest.ga4 import GA4Client
from metricpulse.ingest.models import ConnectionCredential, MetricSample
from metricpulse.logic.gate import SubscriberSchedulingState, is_eligible_now
from metricpulse.logic.insights import AnomalyInsight, analyze
from metricpulse.logic.tiers import TierPolicies, default_policies
from metricpulse.utils.dates import ensure_utc, in_timezone, lookback_window, timezone_name, utc_now
from metricpulse.utils.esp import EmailMessage, EmailProvider

logger = logging.getLogger(__name__)

SUBSCRIBER_TIMEOUT_SECONDS = float(os.environ.get("SUBSCRIBER_TIMEOUT_SECONDS", 1800))
LOCK_TTL_SECONDS = int(os.environ.get("SUBSCRIBER_LOCK_TTL_SECONDS", 3600))
TOP_INSIGHTS = int(os.environ.get("TOP_INSIGHTS", 3))
CONNECTION_GRACE = timedelta(hours=24)
PROCESSING_NOTICE_INTERVAL = timedelta(days=7)

PROFILE_NOT_FOUND = "profile_not_found"
INACTIVE = "inactive"
PREFS_DISABLED = "prefs_disabled"
IN_FLIGHT = "in_flight"
NO_CONNECTION = "no_connection"
REFRESH_ERROR = "refresh_error"
FETCH_ERROR = "fetch_error"
NO_METRICS = "no_metrics"
NO_INSIGHTS = "no_insights"
PERSIST_ERROR = "persist_error"
NOTIFY_ERROR = "notify_error"
TIMEOUT = "timeout"
UNEXPECTED_ERROR = "unexpected_error"


@dataclass(slots=True)
class SubscriberResult:
    user_id: str
    success: bool
    reason: str | None = None
    insights_count: int = 0
    email_sent: bool = False
    notification: str | None = None
    error: str | None = None
    # set when an email went out but its bookkeeping could not be written
    audit_error: str | None = None


@dataclass(slots=True)
class RunSummary:
    run_id: int | None
    status: str
    total: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    emails_sent: int = 0
    insights_found: int = 0
    duration_ms: int = 0
    results: list[SubscriberResult] = field(default_factory=list)
    error: str | None = None


class RunOrchestrator:
    """Drives one tick: enumerate, gate, fan out, and audit."""

    def __init__(
        self,
        store: SubscriberStore,
        recorder: DeliveryRecorder,
        metrics_client: GA4Client,
        refresher: CredentialRefresher,
        sender: NotificationSender,
        *,
        analyzer: Callable[[Sequence[MetricSample]], list[AnomalyInsight]] = analyze,
        policies: TierPolicies | None = None,
        clock: Callable[[], datetime] = utc_now,
        timeout: float | None = SUBSCRIBER_TIMEOUT_SECONDS,
        lock_ttl: timedelta = timedelta(seconds=LOCK_TTL_SECONDS),
        top_n: int = TOP_INSIGHTS,
    ) -> None:
        self.store = store
        self.recorder = recorder
        self.metrics_client = metrics_client
        self.refresher = refresher
        self.sender = sender
        self.analyzer = analyzer
        self.policies = policies or default_policies()
        self._clock = clock
        self.timeout = timeout or None
        self.lock_ttl = lock_ttl
        self.top_n = top_n

    async def run_tick(self) -> RunSummary:
        started_at = self._clock()
        t0 = time.monotonic()
        logger.info("Starting insights tick at %s", started_at.isoformat())
        run_id: int | None = None
        try:
            run_id = await self._db(self.store.create_job_run, started_at)
        except SQLAlchemyError:
            logger.exception("Failed to create job run record")

        try:
            schedules = await self._db(self.store.list_enabled_schedules)
        except Exception as exc:
            logger.exception("Could not enumerate subscribers")
            summary = RunSummary(run_id=run_id, status="failed", error=str(exc))
            summary.duration_ms = _elapsed_ms(t0)
            await self._finish(summary, errors={"message": str(exc), "type": type(exc).__name__})
            return summary

        eligible: list[str] = []
        skipped = 0
        for user_id, state in schedules:
            if state is not None:
                decision = is_eligible_now(state, started_at, policies=self.policies)
                if not decision.eligible:
                    logger.debug("Skipping %s: %s", user_id, decision.reason)
                    skipped += 1
                    continue
            eligible.append(user_id)
        logger.info("%s subscriber(s) enabled, %s due this tick", len(schedules), len(eligible))

        settled = await asyncio.gather(
            *(self.process_subscriber(user_id, run_id=run_id, now=started_at) for user_id in eligible),
            return_exceptions=True,
        )
        results = [
            outcome
            if isinstance(outcome, SubscriberResult)
            else SubscriberResult(user_id, False, UNEXPECTED_ERROR, error=str(outcome))
            for user_id, outcome in zip(eligible, settled)
        ]
        summary = RunSummary(
            run_id=run_id,
            status="success",
            total=len(results),
            successful=sum(1 for r in results if r.success),
            failed=sum(1 for r in results if not r.success),
            skipped=skipped,
            emails_sent=sum(1 for r in results if r.email_sent),
            insights_found=sum(r.insights_count for r in results if r.success),
            results=results,
        )
        summary.duration_ms = _elapsed_ms(t0)
        logger.info(
            "Insights tick finished: total=%s successful=%s failed=%s skipped=%s (%sms)",
            summary.total,
            summary.successful,
            summary.failed,
            summary.skipped,
            summary.duration_ms,
        )
        await self._finish(summary)
        return summary

    async def process_subscriber(
        self,
        user_id: str,
        *,
        run_id: int | None = None,
        now: datetime | None = None,
        force: bool = False,
    ) -> SubscriberResult:
        """Run the delivery pipeline for one subscriber; never raises.

        ``force`` skips the report-day, frequency and delivery-window checks.
        """
        now = now or self._clock()
        try:
            if self.timeout:
                return await asyncio.wait_for(self._process(user_id, run_id, now, force), self.timeout)
            return await self._process(user_id, run_id, now, force)
        except asyncio.TimeoutError:
            logger.warning("User %s exceeded %ss budget", user_id, self.timeout)
            return SubscriberResult(user_id, False, TIMEOUT)
        except Exception as exc:
            logger.exception("Error processing user %s", user_id)
            return SubscriberResult(user_id, False, UNEXPECTED_ERROR, error=str(exc))

    async def _process(self, user_id: str, run_id: int | None, now: datetime, force: bool) -> SubscriberResult:
        logger.info("Processing user %s", user_id)
        profile = await self._db(self.store.load_profile, user_id)
        if profile is None:
            return _failed(user_id, PROFILE_NOT_FOUND)
        if profile.subscription_status != "active":
            return _failed(user_id, INACTIVE)
        state = await self._db(self.store.load_schedule, profile)
        if state is None or not state.enabled:
            return _failed(user_id, PREFS_DISABLED)
        if not force:
            decision = is_eligible_now(state, now, policies=self.policies)
            if not decision.eligible:
                return _failed(user_id, decision.reason)

        acquired = await self._db(self.store.acquire_lock, user_id, run_id=run_id, now=now, ttl=self.lock_ttl)
        if not acquired:
            return _failed(user_id, IN_FLIGHT)
        try:
            return await self._deliver(profile, state, run_id, now)
        finally:
            await self._release(user_id, now + self.lock_ttl)

    async def _deliver(
        self,
        profile: SubscriberProfile,
        state: SubscriberSchedulingState,
        run_id: int | None,
        now: datetime,
    ) -> SubscriberResult:
        user_id = profile.user_id
        credential = await self._db(self.store.load_active_connection, user_id)
        if credential is None:
            return _failed(user_id, NO_CONNECTION)

        try:
            credential = await self.refresher.ensure_fresh(credential)
        except Exception as exc:
            logger.warning("Token refresh failed for user %s: %s", user_id, exc)
            return _failed(user_id, REFRESH_ERROR, exc)

        policy = self.policies.for_tier(profile.subscription_tier)
        today = in_timezone(now, timezone_name()).date()
        start_date, end_date = lookback_window(policy.lookback_days, today=today)
        logger.info("Using %s-day lookback for %s tier", policy.lookback_days, policy.name)
        try:
            fetch = await self.metrics_client.fetch_metrics(
                credential.property_id,
                credential.access_token,
                credential.refresh_token,
                start_date=start_date,
                end_date=end_date,
            )
        except Exception as exc:
            logger.warning("Metrics fetch failed for user %s: %s", user_id, exc)
            return _failed(user_id, FETCH_ERROR, exc)

        if fetch.new_access_token:
            try:
                credential = await self.refresher.record_rotation(credential, fetch)
            except SQLAlchemyError as exc:
                logger.exception("Could not save rotated token for user %s", user_id)
                return _failed(user_id, REFRESH_ERROR, exc)

        if not fetch.has_data or not fetch.daily:
            logger.info("No metrics data available for user %s", user_id)
            return _failed(user_id, NO_METRICS)

        insights = self.analyzer(fetch.daily)
        if not insights:
            logger.info("No insights generated for user %s", user_id)
            notified, audit_error = await self._maybe_send_processing_notice(profile, state, credential, run_id, now)
            return SubscriberResult(
                user_id,
                False,
                NO_INSIGHTS,
                email_sent=notified,
                notification="processing" if notified else None,
                audit_error=audit_error,
            )

        top = insights[: self.top_n]
        try:
            saved = await self._db(self.recorder.persist_insights, user_id, credential.id, top, top_n=self.top_n)
        except SQLAlchemyError as exc:
            logger.exception("Error saving insights for user %s", user_id)
            return _failed(user_id, PERSIST_ERROR, exc)

        message = insights_message(profile.email, user_id, _greeting_name(profile), top, policy.label, today)
        outcome = await self._send(user_id, "insights", message, run_id)
        if not outcome.success:
            return SubscriberResult(user_id, False, NOTIFY_ERROR, insights_count=saved, error=outcome.error)

        sent_at = self._clock()
        audit_error: str | None = None
        try:
            await self._db(self.store.update_last_sent, user_id, sent_at)
            await self._db(self.recorder.mark_emailed, user_id, [insight.date for insight in top], sent_at)
        except SQLAlchemyError as exc:
            logger.exception("Email to user %s was sent but delivery bookkeeping failed", user_id)
            audit_error = str(exc)
        logger.info("Successfully processed user %s", user_id)
        return SubscriberResult(
            user_id,
            True,
            insights_count=saved,
            email_sent=True,
            notification="insights",
            audit_error=audit_error,
        )

    async def _maybe_send_processing_notice(
        self,
        profile: SubscriberProfile,
        state: SubscriberSchedulingState,
        credential: ConnectionCredential,
        run_id: int | None,
        now: datetime,
    ) -> tuple[bool, str | None]:
        """Return whether a notice went out, plus any bookkeeping error after it did."""
        if credential.created_at is None or ensure_utc(now) - ensure_utc(credential.created_at) < CONNECTION_GRACE:
            return False, None
        last_sent = state.last_email_sent_at
        if last_sent is not None and ensure_utc(now) - ensure_utc(last_sent) < PROCESSING_NOTICE_INTERVAL:
            return False, None
        logger.info("Sending still-processing notice to user %s", profile.user_id)
        message = processing_message(profile.email, profile.user_id, _greeting_name(profile))
        outcome = await self._send(profile.user_id, "processing", message, run_id)
        if not outcome.success:
            return False, None
        try:
            await self._db(self.store.update_last_sent, profile.user_id, self._clock())
        except SQLAlchemyError as exc:
            logger.exception("Notice to user %s was sent but last-sent update failed", profile.user_id)
            return True, str(exc)
        return True, None

    async def _send(self, user_id: str, kind: str, message: EmailMessage, run_id: int | None) -> SendOutcome:
        async def record(attempt: SendAttempt) -> None:
            try:
                await self._db(self.recorder.record_attempt, user_id, kind, attempt, run_id=run_id)
            except SQLAlchemyError:
                logger.exception("Could not log send attempt %s for user %s", attempt.attempt, user_id)

        return await self.sender.send_with_retry(message, on_attempt=record)

    async def _release(self, user_id: str, locked_until: datetime) -> None:
        try:
            await self._db(self.store.release_lock, user_id, locked_until=locked_until)
        except SQLAlchemyError:
            logger.exception("Could not release lock for user %s", user_id)

    async def _finish(self, summary: RunSummary, *, errors: dict[str, str] | None = None) -> None:
        if summary.run_id is None:
            return
        try:
            await self._db(
                self.store.finish_job_run,
                summary.run_id,
                status=summary.status,
                completed_at=self._clock(),
                duration_ms=summary.duration_ms,
                users_processed=summary.total,
                emails_sent=summary.emails_sent,
                insights_found=summary.insights_found,
                errors=errors,
            )
        except SQLAlchemyError:
            logger.exception("Failed to finalize job run %s", summary.run_id)

    async def _db(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))


def _failed(user_id: str, reason: str | None, exc: BaseException | None = None) -> SubscriberResult:
    if exc is None:
        logger.info("User %s not processed: %s", user_id, reason)
    return SubscriberResult(user_id, False, reason, error=str(exc) if exc is not None else None)


def _greeting_name(profile: SubscriberProfile) -> str:
    return profile.display_name or profile.email.split("@")[0]


def _elapsed_ms(t0: float) -> int:
    return int((time.monotonic() - t0) * 1000)


def build_orchestrator(engine: Engine, client: GA4Client, provider: EmailProvider | None = None) -> RunOrchestrator:
    store = SubscriberStore(engine)
    return RunOrchestrator(
        store=store,
        recorder=DeliveryRecorder(engine),
        metrics_client=client,
        refresher=CredentialRefresher(client, store),
        sender=NotificationSender(provider or EmailProvider()),
    )


async def run_tick() -> RunSummary:
    load_dotenv()
    engine = create_engine_from_env()
    client = GA4Client()
    try:
        return await build_orchestrator(engine, client).run_tick()
    finally:
        await client.close()


async def run_for_user(user_id: str, *, force: bool = False) -> SubscriberResult:
    load_dotenv()
    engine = create_engine_from_env()
    client = GA4Client()
    try:
        return await build_orchestrator(engine, client).process_subscriber(user_id, force=force)
    finally:
        await client.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(run_tick())
