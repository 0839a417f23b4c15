"""Idempotent persistence of delivered insights and send attempts."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import date, datetime

from sqlalchemy import insert, update
from sqlalchemy.engine import Engine

from metricpulse.db.session import upsert
from metricpulse.db.tables import daily_insights, email_send_log
from metricpulse.email.sender import SendAttempt
from metricpulse.logic.insights import AnomalyInsight
from metricpulse.logic.ranking import priorities
from metricpulse.utils.dates import ensure_utc

logger = logging.getLogger(__name__)

UPSERT_COLUMNS = (
    "connection_id",
    "insight_type",
    "metric_name",
    "metric_value",
    "baseline_value",
    "percent_change",
    "direction",
    "trend_type",
    "z_score",
    "confidence_level",
    "headline",
    "explanation",
    "action_item",
    "impact_score",
)


class DeliveryRecorder:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def persist_insights(
        self,
        user_id: str,
        connection_id: int | None,
        insights: Sequence[AnomalyInsight],
        *,
        top_n: int = 3,
    ) -> int:
        """Upsert the ``top_n`` ranked insights keyed on (user, insight date, priority)."""
        rows = [
            {
                "user_id": user_id,
                "connection_id": connection_id,
                "insight_date": insight.date,
                "insight_type": "ANOMALY",
                "priority": priority,
                "metric_name": insight.metric,
                "metric_value": insight.current_value,
                "baseline_value": insight.expected_value,
                "percent_change": insight.percent_change,
                "direction": insight.direction,
                "trend_type": insight.trend_type,
                "z_score": insight.z_score,
                "confidence_level": insight.confidence_level,
                "headline": insight.headline,
                "explanation": insight.explanation,
                "action_item": "\n".join(insight.action_items),
                "impact_score": insight.impact_score,
            }
            for priority, insight in priorities(insights, top_n)
        ]
        if not rows:
            return 0
        with self.engine.begin() as conn:
            for row in rows:
                stmt = upsert(conn, daily_insights).values(**row)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[daily_insights.c.user_id, daily_insights.c.insight_date, daily_insights.c.priority],
                    set_={column: stmt.excluded[column] for column in UPSERT_COLUMNS},
                )
                conn.execute(stmt)
        logger.info("Saved %s insights for user %s", len(rows), user_id)
        return len(rows)

    def mark_emailed(self, user_id: str, insight_dates: Sequence[date], sent_at: datetime) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(daily_insights)
                .where(daily_insights.c.user_id == user_id, daily_insights.c.insight_date.in_(sorted(set(insight_dates))))
                .values(email_sent_at=ensure_utc(sent_at).replace(tzinfo=None))
            )

    def record_attempt(self, user_id: str, kind: str, attempt: SendAttempt, *, run_id: int | None = None) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                insert(email_send_log).values(
                    user_id=user_id,
                    job_run_id=run_id,
                    kind=kind,
                    attempt=attempt.attempt,
                    status="sent" if attempt.success else "failed",
                    provider_id=attempt.message_id,
                    error=attempt.error,
                    attempted_at=ensure_utc(attempt.at).replace(tzinfo=None),
                )
            )
