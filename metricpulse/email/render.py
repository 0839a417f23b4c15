"""Email rendering utilities."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, select_autoescape

from metricpulse.logic.actions import display_name, format_metric_value
from metricpulse.logic.insights import AnomalyInsight
from metricpulse.utils.esp import EmailMessage
from metricpulse.utils.urls import APP_URL, preferences_url

TEMPLATE_DIR = Path(__file__).parent
ENV = Environment(
    loader=FileSystemLoader(str(TEMPLATE_DIR)),
    autoescape=select_autoescape(enabled_extensions=("html",)),
)


def render_email(template_name: str, context: dict[str, Any]) -> str:
    template = ENV.get_template(template_name)
    return template.render(**context)


def insights_message(to: str, user_id: str, name: str, insights: Sequence[AnomalyInsight], tier_label: str, as_of: date) -> EmailMessage:
    cards = [
        {
            "metric": display_name(insight.metric),
            "direction": insight.direction,
            "change": f"{'+' if insight.percent_change > 0 else ''}{insight.percent_change * 100:.1f}%",
            "current": format_metric_value(insight.metric, insight.current_value),
            "expected": format_metric_value(insight.metric, insight.expected_value),
            "headline": insight.headline,
            "explanation": insight.explanation,
            "actions": list(insight.action_items),
        }
        for insight in insights
    ]
    subject = f"Your Daily GA4 Insights - {as_of.strftime('%b')} {as_of.day}"
    html = render_email(
        "insights.html",
        {
            "subject": subject,
            "name": name,
            "tier": tier_label,
            "insights": cards,
            "dashboard_url": APP_URL,
            "preferences_url": preferences_url(user_id),
        },
    )
    return EmailMessage(to=to, subject=subject, html=html)


def processing_message(to: str, user_id: str, name: str) -> EmailMessage:
    subject = "We're still learning your site's patterns"
    html = render_email(
        "processing.html",
        {
            "subject": subject,
            "name": name,
            "dashboard_url": APP_URL,
            "preferences_url": preferences_url(user_id),
        },
    )
    return EmailMessage(to=to, subject=subject, html=html)
