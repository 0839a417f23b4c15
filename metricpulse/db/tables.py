"""Table definitions shared by the store, the recorder and migrations."""

from __future__ import annotations

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

user_profiles = Table(
    "user_profiles",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("email", Text, nullable=False),
    Column("display_name", Text),
    Column("subscription_tier", Text, nullable=False, default="starter"),
    Column("subscription_status", Text, nullable=False, default="inactive"),
)

email_preferences = Table(
    "email_preferences",
    metadata,
    Column("user_id", String(64), ForeignKey("user_profiles.id"), primary_key=True),
    Column("enabled", Boolean, nullable=False, default=True),
    Column("delivery_time", String(8), nullable=False, default="08:00:00"),
    Column("timezone", Text, nullable=False, default="America/New_York"),
    Column("frequency", Text, nullable=False, default="daily"),
    Column("report_days", JSON),
    Column("last_email_sent_at", DateTime),
)

ga4_connections = Table(
    "ga4_connections",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), ForeignKey("user_profiles.id"), nullable=False),
    Column("property_id", Text, nullable=False),
    Column("access_token", Text, nullable=False),
    Column("refresh_token", Text, nullable=False),
    Column("token_expires_at", DateTime, nullable=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", DateTime, nullable=False),
)

daily_insights = Table(
    "daily_insights",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), ForeignKey("user_profiles.id"), nullable=False),
    Column("connection_id", Integer, ForeignKey("ga4_connections.id")),
    Column("insight_date", Date, nullable=False),
    Column("insight_type", Text, nullable=False, default="ANOMALY"),
    Column("priority", Integer, nullable=False),
    Column("metric_name", Text, nullable=False),
    Column("metric_value", Float),
    Column("baseline_value", Float),
    Column("percent_change", Float),
    Column("direction", Text),
    Column("trend_type", Text),
    Column("z_score", Float),
    Column("confidence_level", Float),
    Column("headline", Text),
    Column("explanation", Text),
    Column("action_item", Text),
    Column("impact_score", Float),
    Column("email_sent_at", DateTime),
    UniqueConstraint("user_id", "insight_date", "priority", name="uq_daily_insights_user_date_priority"),
)

email_send_log = Table(
    "email_send_log",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(64), nullable=False),
    Column("job_run_id", Integer),
    Column("kind", Text, nullable=False),
    Column("attempt", Integer, nullable=False),
    Column("status", Text, nullable=False),
    Column("provider_id", Text),
    Column("error", Text),
    Column("attempted_at", DateTime, nullable=False),
)

cron_job_runs = Table(
    "cron_job_runs",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("status", Text, nullable=False),
    Column("started_at", DateTime, nullable=False),
    Column("completed_at", DateTime),
    Column("users_processed", Integer),
    Column("emails_sent", Integer),
    Column("insights_found", Integer),
    Column("duration_ms", Integer),
    Column("errors", JSON),
)

subscriber_locks = Table(
    "subscriber_locks",
    metadata,
    Column("user_id", String(64), primary_key=True),
    Column("job_run_id", Integer),
    Column("locked_until", DateTime, nullable=False),
)
