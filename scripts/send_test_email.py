"""Send a test insights email built from a synthetic series."""

from __future__ import annotations

import asyncio
import os
from datetime import timedelta

from dotenv import load_dotenv

from metricpulse.email.render import insights_message
from metricpulse.email.sender import NotificationSender
from metricpulse.ingest.models import MetricSample
from metricpulse.logic.insights import analyze
from metricpulse.utils.dates import today_in_tz
from metricpulse.utils.esp import EmailProvider


def sample_series(days: int = 28) -> list[MetricSample]:
    today = today_in_tz()
    series = []
    for offset in range(days, 0, -1):
        day = today - timedelta(days=offset)
        weekend = day.weekday() >= 5
        series.append(
            MetricSample(
                date=day,
                sessions=800 if weekend else 1200,
                total_users=600 if weekend else 900,
                conversions=20 if weekend else 35,
                engagement_rate=0.58,
                bounce_rate=0.42,
            )
        )
    last = series[-1]
    series[-1] = MetricSample(
        date=last.date,
        sessions=last.sessions * 1.6,
        total_users=last.total_users * 1.5,
        conversions=last.conversions * 0.4,
        engagement_rate=last.engagement_rate,
        bounce_rate=0.61,
    )
    return series


async def main() -> None:
    load_dotenv()
    recipient = os.environ.get("TEST_RECIPIENT")
    if not recipient:
        raise SystemExit("TEST_RECIPIENT env var required")
    insights = analyze(sample_series())[:3]
    message = insights_message(recipient, "test-user", "there", insights, "Growth", today_in_tz())
    outcome = await NotificationSender(EmailProvider(), max_attempts=1).send_with_retry(message)
    if not outcome.success:
        raise SystemExit(f"Send failed: {outcome.error}")
    print("Sent test email to", recipient, "with", len(insights), "insights")


if __name__ == "__main__":
    asyncio.run(main())
