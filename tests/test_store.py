from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import func, select

from metricpulse.db.recorder import DeliveryRecorder
from metricpulse.db.store import SubscriberStore
from metricpulse.db.tables import daily_insights, email_preferences, email_send_log
from metricpulse.email.sender import SendAttempt
from metricpulse.logic.insights import analyze

from factories import spiked_series

NOW = datetime(2024, 1, 22, 8, 0, tzinfo=timezone.utc)


def test_list_enabled_schedules(engine, subscriber):
    subscriber("alice", delivery_time="09:30:00", report_days=["Mon", "Tue"], tz="Europe/Berlin")
    subscriber("bob", enabled=False)
    with engine.begin() as conn:
        conn.execute(email_preferences.insert().values(user_id="ghost", enabled=True, delivery_time="08:00:00", timezone="UTC"))

    schedules = dict(SubscriberStore(engine).list_enabled_schedules())
    assert set(schedules) == {"alice", "ghost"}
    assert schedules["ghost"] is None
    alice = schedules["alice"]
    assert alice.delivery_time == time(9, 30)
    assert alice.report_days == frozenset({"Mon", "Tue"})
    assert alice.subscription_tier == "growth"
    assert alice.timezone == "Europe/Berlin"


def test_missing_report_days_means_every_day(engine, subscriber):
    subscriber("alice")
    store = SubscriberStore(engine)
    state = store.load_schedule(store.load_profile("alice"))
    assert len(state.report_days) == 7


def test_credential_roundtrip(engine, subscriber):
    subscriber("alice")
    store = SubscriberStore(engine)
    credential = store.load_active_connection("alice")
    assert credential.access_token == "access-alice"
    assert credential.expires_at.tzinfo is not None

    expiry = NOW + timedelta(hours=1)
    store.save_credential(credential.rotated("fresh", expiry))
    reloaded = store.load_active_connection("alice")
    assert reloaded.access_token == "fresh"
    assert reloaded.refresh_token == "refresh-alice"
    assert reloaded.expires_at == expiry


def test_no_connection(engine, subscriber):
    subscriber("alice", property_id=None)
    assert SubscriberStore(engine).load_active_connection("alice") is None


def test_job_run_lifecycle(engine):
    store = SubscriberStore(engine)
    run_id = store.create_job_run(NOW)
    assert store.load_job_run(run_id).status == "running"
    store.finish_job_run(
        run_id,
        status="success",
        completed_at=NOW + timedelta(seconds=5),
        duration_ms=5000,
        users_processed=2,
        emails_sent=1,
        insights_found=1,
    )
    run = store.load_job_run(run_id)
    assert run.status == "success"
    assert run.users_processed == 2
    assert run.completed_at == NOW + timedelta(seconds=5)


def test_lock_is_exclusive_until_expiry(engine):
    store = SubscriberStore(engine)
    ttl = timedelta(minutes=30)
    assert store.acquire_lock("alice", run_id=1, now=NOW, ttl=ttl)
    assert not store.acquire_lock("alice", run_id=2, now=NOW + timedelta(minutes=5), ttl=ttl)
    assert store.acquire_lock("alice", run_id=3, now=NOW + timedelta(hours=1), ttl=ttl)
    store.release_lock("alice")
    assert store.acquire_lock("alice", run_id=4, now=NOW + timedelta(hours=1), ttl=ttl)


def test_persist_insights_is_idempotent(engine, subscriber):
    subscriber("alice")
    insights = analyze(spiked_series())
    recorder = DeliveryRecorder(engine)
    assert recorder.persist_insights("alice", 1, insights) == 1
    assert recorder.persist_insights("alice", 1, insights) == 1
    with engine.connect() as conn:
        assert conn.execute(select(func.count()).select_from(daily_insights)).scalar() == 1
        row = conn.execute(select(daily_insights)).mappings().one()
    assert row["priority"] == 1
    assert row["metric_name"] == "sessions"
    assert row["trend_type"] == "trend"
    assert row["insight_date"] == date(2024, 1, 21)


def test_persist_keeps_top_three(engine, subscriber):
    subscriber("alice")
    base = analyze(spiked_series())[0]
    insights = [base] * 5
    recorder = DeliveryRecorder(engine)
    assert recorder.persist_insights("alice", 1, insights) == 3
    recorder.persist_insights("alice", 1, insights)
    with engine.connect() as conn:
        priorities = conn.execute(select(daily_insights.c.priority).order_by(daily_insights.c.priority)).scalars().all()
    assert priorities == [1, 2, 3]


def test_mark_emailed_and_attempt_log(engine, subscriber):
    subscriber("alice")
    recorder = DeliveryRecorder(engine)
    insights = analyze(spiked_series())
    recorder.persist_insights("alice", 1, insights)
    recorder.mark_emailed("alice", [insight.date for insight in insights], NOW)
    recorder.record_attempt("alice", "insights", SendAttempt(attempt=1, success=False, at=NOW, error="boom"), run_id=7)
    recorder.record_attempt("alice", "insights", SendAttempt(attempt=2, success=True, at=NOW, message_id="m-1"), run_id=7)
    with engine.connect() as conn:
        assert conn.execute(select(daily_insights.c.email_sent_at)).scalar() == NOW.replace(tzinfo=None)
        statuses = conn.execute(select(email_send_log.c.status).order_by(email_send_log.c.attempt)).scalars().all()
    assert statuses == ["failed", "sent"]


def test_stale_holder_cannot_release_a_taken_over_lock(engine):
    store = SubscriberStore(engine)
    ttl = timedelta(minutes=30)
    assert store.acquire_lock("alice", run_id=1, now=NOW, ttl=ttl)
    later = NOW + timedelta(hours=1)
    assert store.acquire_lock("alice", run_id=2, now=later, ttl=ttl)

    store.release_lock("alice", locked_until=NOW + ttl)
    assert not store.acquire_lock("alice", run_id=3, now=later + timedelta(minutes=5), ttl=ttl)

    store.release_lock("alice", locked_until=later + ttl)
    assert store.acquire_lock("alice", run_id=3, now=later + timedelta(minutes=5), ttl=ttl)
