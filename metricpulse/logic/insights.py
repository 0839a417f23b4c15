"""Seasonal z-score anomaly detection over daily analytics series."""

from __future__ import annotations

import logging
import os
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date

from metricpulse.ingest.models import TRACKED_METRICS, MetricSample
from metricpulse.logic.actions import action_items, display_name, format_metric_value
from metricpulse.logic.ranking import rank_insights
from metricpulse.logic.signals import (
    confidence_level,
    ols_slope,
    percent_change,
    population_std,
    seasonal_baseline,
    trailing_window,
    z_score,
)
from metricpulse.utils.dates import format_date

logger = logging.getLogger(__name__)

MIN_HISTORY = 7
RECENT_DAYS = 3
TREND_WINDOW = 5
TREND_SLOPE_THRESHOLD = 0.1
Z_THRESHOLD = float(os.environ.get("Z_SCORE_THRESHOLD", 2.0))
MAX_INSIGHTS = 5


@dataclass(frozen=True, slots=True)
class AnomalyInsight:
    date: date
    metric: str
    current_value: float
    expected_value: float
    percent_change: float
    z_score: float
    confidence_level: float
    trend_type: str
    direction: str
    impact_score: float
    headline: str
    explanation: str
    action_items: tuple[str, ...]


def analyze(series: Sequence[MetricSample], *, z_threshold: float = Z_THRESHOLD, limit: int = MAX_INSIGHTS) -> list[AnomalyInsight]:
    """Rank the statistically significant movements in the last few days of ``series``.

    Returns an empty list when fewer than ``MIN_HISTORY`` samples are supplied.
    """
    if len(series) < MIN_HISTORY:
        logger.info("Need at least %s days of data, got %s", MIN_HISTORY, len(series))
        return []
    ordered = sorted(series, key=lambda sample: sample.date)
    insights: list[AnomalyInsight] = []
    for metric in TRACKED_METRICS:
        insights.extend(analyze_metric(ordered, metric, z_threshold=z_threshold))
    ranked = rank_insights(insights, limit=limit)
    logger.info("Found %s significant insights across %s days", len(ranked), len(ordered))
    return ranked


def analyze_metric(ordered: Sequence[MetricSample], metric: str, *, z_threshold: float = Z_THRESHOLD) -> list[AnomalyInsight]:
    dates = [sample.date for sample in ordered]
    values = [sample.value(metric) for sample in ordered]
    baseline = seasonal_baseline(dates, values)
    std_dev = population_std(values)
    insights: list[AnomalyInsight] = []
    for index in range(max(len(ordered) - RECENT_DAYS, 0), len(ordered)):
        current = values[index]
        expected = baseline[dates[index].weekday()]
        score = z_score(current, expected, std_dev)
        if score is None or abs(score) < z_threshold:
            continue
        change = percent_change(current, expected)
        if change is None:
            continue
        direction = "up" if current > expected else "down"
        trend_type = classify_trend(values, index)
        confidence = confidence_level(score)
        insights.append(
            AnomalyInsight(
                date=dates[index],
                metric=metric,
                current_value=current,
                expected_value=expected,
                percent_change=change,
                z_score=score,
                confidence_level=confidence,
                trend_type=trend_type,
                direction=direction,
                impact_score=abs(change) * 100,
                headline=headline(metric, change, trend_type, confidence),
                explanation=explanation(metric, current, expected, direction, trend_type, dates[index]),
                action_items=action_items(metric, direction),
            )
        )
    return insights


def classify_trend(values: Sequence[float], index: int) -> str:
    window = trailing_window(values, index, TREND_WINDOW)
    if window is None:
        return "spike"
    return "trend" if abs(ols_slope(window)) > TREND_SLOPE_THRESHOLD else "spike"


def headline(metric: str, change: float, trend_type: str, confidence: float) -> str:
    verb = "trending" if trend_type == "trend" else ("jumped" if change > 0 else "dropped")
    return f"{display_name(metric)} {verb} {abs(change) * 100:.1f}% ({confidence}% confidence)"


def explanation(metric: str, current: float, expected: float, direction: str, trend_type: str, day: date) -> str:
    context = (
        "This is a sustained trend over multiple days."
        if trend_type == "trend"
        else "This appears to be a temporary spike."
    )
    return (
        f"{display_name(metric)} reached {format_metric_value(metric, current)} on {format_date(day)}, "
        f"{direction} from an expected {format_metric_value(metric, expected)} "
        f"(accounting for day-of-week patterns). {context}"
    )
