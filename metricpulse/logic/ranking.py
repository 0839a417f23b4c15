"""Ranking logic for detected insights."""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from metricpulse.logic.insights import AnomalyInsight


def rank_insights(insights: Sequence["AnomalyInsight"], limit: int = 5) -> list["AnomalyInsight"]:
    """Order by |z| then impact, both descending; ties keep detection order."""
    ordered = sorted(insights, key=lambda i: (-abs(i.z_score), -i.impact_score))
    return ordered[:limit]


def priorities(insights: Sequence["AnomalyInsight"], top_n: int) -> list[tuple[int, "AnomalyInsight"]]:
    """Pair the first ``top_n`` ranked insights with their 1-based priority."""
    return list(enumerate(insights[:top_n], start=1))
