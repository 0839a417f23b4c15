from datetime import date

import pytest

from metricpulse.logic import insights
from metricpulse.ingest.models import MetricSample
from metricpulse.logic.actions import ACTION_LIBRARY

from factories import flat_series, spiked_series


def test_short_history_yields_nothing():
    assert insights.analyze(spiked_series()[:6]) == []


def test_flat_series_yields_nothing():
    assert insights.analyze(flat_series()) == []
    assert insights.analyze(flat_series(7)) == []


def test_sunday_spike_is_detected_as_trend():
    result = insights.analyze(spiked_series(), z_threshold=2.0)
    assert len(result) == 1
    insight = result[0]
    assert insight.metric == "sessions"
    assert insight.date == date(2024, 1, 21)
    assert insight.direction == "up"
    assert insight.expected_value == pytest.approx(500 / 3)
    assert insight.z_score == pytest.approx(3.1305, abs=1e-3)
    assert insight.confidence_level == 99.7
    assert insight.percent_change == pytest.approx(0.8)
    assert insight.impact_score == pytest.approx(80.0)
    assert insight.trend_type == "trend"
    assert insight.headline == "Sessions trending 80.0% (99.7% confidence)"
    assert insight.action_items == ACTION_LIBRARY[("sessions", "up")]
    assert "day-of-week" in insight.explanation


def test_threshold_filters_out_weaker_movements():
    assert insights.analyze(spiked_series(), z_threshold=3.5) == []


def test_only_recent_days_are_scanned():
    series = flat_series()
    spike = series[15]
    series[15] = MetricSample(date=spike.date, sessions=300, total_users=80, conversions=5, engagement_rate=0.6, bounce_rate=0.4)
    assert insights.analyze(series) == []


def test_classify_trend_without_history_is_spike():
    assert insights.classify_trend([1, 2, 3, 4, 50], 4) == "spike"
    assert insights.classify_trend([1, 1, 1, 1, 1, 1, 1], 6) == "spike"
    assert insights.classify_trend([1, 1, 1, 1, 1, 5], 5) == "trend"


def test_headline_verbs():
    assert insights.headline("conversions", -0.25, "spike", 95.4) == "Conversions dropped 25.0% (95.4% confidence)"
    assert insights.headline("bounce_rate", 0.5, "spike", 98.8) == "Bounce Rate jumped 50.0% (98.8% confidence)"


def test_rate_explanation_formats_percentages():
    text = insights.explanation("bounce_rate", 0.55, 0.4, "up", "spike", date(2024, 1, 21))
    assert "55.0%" in text and "40.0%" in text
    assert "temporary spike" in text


def test_value_two_and_a_half_deviations_above_its_weekday_mean():
    # 16 days ending on a Tuesday; offsets keep the mean and std dyadic so z is exactly 2.5
    offsets = [0, 0, 5, -4, 1, -1, 0, 0, 0, 1, -1, 1, -1, 0, 0, 15]
    series = [
        MetricSample(
            date=sample.date,
            sessions=100 + offset,
            total_users=sample.total_users,
            conversions=sample.conversions,
            engagement_rate=sample.engagement_rate,
            bounce_rate=sample.bounce_rate,
        )
        for sample, offset in zip(flat_series(16), offsets)
    ]

    result = insights.analyze(series)

    assert len(result) == 1
    insight = result[0]
    assert insight.date == date(2024, 1, 16)
    assert insight.expected_value == pytest.approx(105.0)
    assert insight.z_score == pytest.approx(2.5)
    assert insight.confidence_level == 98.8
