"""Subscriber, connection and job-run persistence."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Engine

from metricpulse.db.session import upsert
from metricpulse.db.tables import cron_job_runs, email_preferences, ga4_connections, subscriber_locks, user_profiles
from metricpulse.ingest.models import ConnectionCredential
from metricpulse.logic.gate import SubscriberSchedulingState
from metricpulse.utils.dates import WEEKDAY_ABBREVIATIONS, ensure_utc, parse_clock_time

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SubscriberProfile:
    user_id: str
    email: str
    display_name: str | None
    subscription_tier: str
    subscription_status: str


@dataclass(slots=True)
class JobRun:
    id: int
    status: str
    started_at: datetime
    completed_at: datetime | None = None
    users_processed: int | None = None
    emails_sent: int | None = None
    insights_found: int | None = None
    duration_ms: int | None = None
    errors: dict[str, Any] | None = None


def _db_time(value: datetime) -> datetime:
    # columns hold naive UTC
    return ensure_utc(value).replace(tzinfo=None)


def _maybe_utc(value: datetime | None) -> datetime | None:
    return ensure_utc(value) if value is not None else None


class SubscriberStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def list_enabled_schedules(self) -> list[tuple[str, SubscriberSchedulingState | None]]:
        """Every subscriber with email enabled; the state is ``None`` when the profile is missing."""
        query = (
            select(email_preferences, user_profiles.c.subscription_tier, user_profiles.c.subscription_status, user_profiles.c.id.label("profile_id"))
            .select_from(email_preferences.outerjoin(user_profiles, user_profiles.c.id == email_preferences.c.user_id))
            .where(email_preferences.c.enabled.is_(True))
            .order_by(email_preferences.c.user_id)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        schedules: list[tuple[str, SubscriberSchedulingState | None]] = []
        for row in rows:
            state = _schedule_from_row(row, row["subscription_tier"], row["subscription_status"]) if row["profile_id"] else None
            schedules.append((row["user_id"], state))
        return schedules

    def load_profile(self, user_id: str) -> SubscriberProfile | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(user_profiles).where(user_profiles.c.id == user_id)).mappings().first()
        if row is None:
            return None
        return SubscriberProfile(
            user_id=row["id"],
            email=row["email"],
            display_name=row["display_name"],
            subscription_tier=row["subscription_tier"],
            subscription_status=row["subscription_status"],
        )

    def load_schedule(self, profile: SubscriberProfile) -> SubscriberSchedulingState | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                select(email_preferences).where(email_preferences.c.user_id == profile.user_id)
            ).mappings().first()
        if row is None:
            return None
        return _schedule_from_row(row, profile.subscription_tier, profile.subscription_status)

    def load_active_connection(self, user_id: str) -> ConnectionCredential | None:
        query = (
            select(ga4_connections)
            .where(ga4_connections.c.user_id == user_id, ga4_connections.c.is_active.is_(True))
            .order_by(ga4_connections.c.created_at, ga4_connections.c.id)
            .limit(1)
        )
        with self.engine.connect() as conn:
            row = conn.execute(query).mappings().first()
        if row is None:
            return None
        return ConnectionCredential(
            id=row["id"],
            user_id=row["user_id"],
            property_id=row["property_id"],
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=ensure_utc(row["token_expires_at"]),
            is_active=row["is_active"],
            created_at=_maybe_utc(row["created_at"]),
        )

    def save_credential(self, credential: ConnectionCredential) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(ga4_connections)
                .where(ga4_connections.c.id == credential.id)
                .values(
                    access_token=credential.access_token,
                    refresh_token=credential.refresh_token,
                    token_expires_at=_db_time(credential.expires_at),
                )
            )

    def update_last_sent(self, user_id: str, sent_at: datetime) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(email_preferences)
                .where(email_preferences.c.user_id == user_id)
                .values(last_email_sent_at=_db_time(sent_at))
            )

    def create_job_run(self, started_at: datetime) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                insert(cron_job_runs).values(status="running", started_at=_db_time(started_at))
            )
            return int(result.inserted_primary_key[0])

    def finish_job_run(
        self,
        run_id: int,
        *,
        status: str,
        completed_at: datetime,
        duration_ms: int,
        users_processed: int = 0,
        emails_sent: int = 0,
        insights_found: int = 0,
        errors: dict[str, Any] | None = None,
    ) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(cron_job_runs)
                .where(cron_job_runs.c.id == run_id)
                .values(
                    status=status,
                    completed_at=_db_time(completed_at),
                    users_processed=users_processed,
                    emails_sent=emails_sent,
                    insights_found=insights_found,
                    duration_ms=duration_ms,
                    errors=errors,
                )
            )

    def load_job_run(self, run_id: int) -> JobRun | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(cron_job_runs).where(cron_job_runs.c.id == run_id)).mappings().first()
        if row is None:
            return None
        return JobRun(
            id=row["id"],
            status=row["status"],
            started_at=ensure_utc(row["started_at"]),
            completed_at=_maybe_utc(row["completed_at"]),
            users_processed=row["users_processed"],
            emails_sent=row["emails_sent"],
            insights_found=row["insights_found"],
            duration_ms=row["duration_ms"],
            errors=row["errors"],
        )

    def acquire_lock(self, user_id: str, *, run_id: int | None, now: datetime, ttl: timedelta) -> bool:
        """Claim the per-subscriber in-flight marker unless an unexpired one exists."""
        with self.engine.begin() as conn:
            stmt = upsert(conn, subscriber_locks).values(
                user_id=user_id, job_run_id=run_id, locked_until=_db_time(now + ttl)
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[subscriber_locks.c.user_id],
                set_={"job_run_id": stmt.excluded.job_run_id, "locked_until": stmt.excluded.locked_until},
                where=subscriber_locks.c.locked_until < _db_time(now),
            )
            acquired = conn.execute(stmt).rowcount == 1
        if not acquired:
            logger.info("Subscriber %s already in flight", user_id)
        return acquired

    def release_lock(self, user_id: str, *, locked_until: datetime | None = None) -> None:
        """Drop the marker; with ``locked_until``, only if it is still the one this holder took."""
        query = subscriber_locks.delete().where(subscriber_locks.c.user_id == user_id)
        if locked_until is not None:
            query = query.where(subscriber_locks.c.locked_until == _db_time(locked_until))
        with self.engine.begin() as conn:
            conn.execute(query)


def _schedule_from_row(row, tier: str | None, status: str | None) -> SubscriberSchedulingState:
    report_days = row["report_days"] or list(WEEKDAY_ABBREVIATIONS)
    return SubscriberSchedulingState(
        user_id=row["user_id"],
        subscription_tier=tier,
        subscription_status=status,
        delivery_time=parse_clock_time(row["delivery_time"]),
        timezone=row["timezone"],
        enabled=bool(row["enabled"]),
        report_days=frozenset(report_days),
        last_email_sent_at=_maybe_utc(row["last_email_sent_at"]),
    )
