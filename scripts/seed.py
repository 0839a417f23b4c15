"""Seed database with demo subscribers."""

from __future__ import annotations

from dotenv import load_dotenv
from sqlalchemy import text

from metricpulse.db.migrate import run_migrations
from metricpulse.db.session import create_engine_from_env


DEMO_USERS = [
    {"id": "demo-starter", "email": "starter@example.com", "tier": "starter", "delivery_time": "08:00:00", "timezone": "America/New_York"},
    {"id": "demo-growth", "email": "growth@example.com", "tier": "growth", "delivery_time": "07:30:00", "timezone": "Europe/London"},
    {"id": "demo-pro", "email": "pro@example.com", "tier": "pro", "delivery_time": "09:00:00", "timezone": "America/Los_Angeles"},
]


def main() -> None:
    load_dotenv()
    engine = create_engine_from_env()
    run_migrations(engine)
    with engine.begin() as conn:
        for user in DEMO_USERS:
            conn.execute(
                text(
                    """
                    INSERT INTO user_profiles (id, email, subscription_tier, subscription_status)
                    VALUES (:id, :email, :tier, 'active')
                    ON CONFLICT (id) DO UPDATE SET subscription_tier = EXCLUDED.subscription_tier
                    """
                ),
                user,
            )
            conn.execute(
                text(
                    """
                    INSERT INTO email_preferences (user_id, enabled, delivery_time, timezone, frequency)
                    VALUES (:id, true, :delivery_time, :timezone, 'daily')
                    ON CONFLICT (user_id) DO UPDATE SET delivery_time = EXCLUDED.delivery_time, timezone = EXCLUDED.timezone
                    """
                ),
                user,
            )
    print("Seed complete")


if __name__ == "__main__":
    main()
