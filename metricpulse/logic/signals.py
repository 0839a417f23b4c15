"""Statistical primitives for anomaly detection."""

from __future__ import annotations

import math
from collections import defaultdict
from collections.abc import Sequence
from datetime import date

import numpy as np

# |z| breakpoints -> two-sided normal coverage, highest first
CONFIDENCE_BREAKPOINTS = ((3.0, 99.7), (2.5, 98.8), (2.0, 95.4))
FALLBACK_CONFIDENCE = 90.0


def percent_change(current: float, expected: float) -> float | None:
    if expected == 0:
        return None
    return (current - expected) / expected


def seasonal_baseline(dates: Sequence[date], values: Sequence[float]) -> dict[int, float]:
    """Mean value per weekday (Monday=0); empty weekdays fall back to the overall mean."""
    if not values:
        return {}
    by_weekday: dict[int, list[float]] = defaultdict(list)
    for day, value in zip(dates, values):
        by_weekday[day.weekday()].append(value)
    overall = float(np.mean(values))
    return {
        weekday: float(np.mean(by_weekday[weekday])) if by_weekday[weekday] else overall
        for weekday in range(7)
    }


def population_std(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    return float(np.std(np.asarray(values, dtype=float)))


def z_score(current: float, expected: float, std_dev: float) -> float | None:
    """Standard score of ``current``; ``None`` when the series has no variance."""
    if std_dev == 0 or math.isnan(std_dev):
        return None
    return (current - expected) / std_dev


def ols_slope(values: Sequence[float]) -> float:
    """Least-squares slope of ``values`` against their position index."""
    n = len(values)
    if n < 2:
        return 0.0
    x = np.arange(n, dtype=float)
    y = np.asarray(values, dtype=float)
    x_centered = x - x.mean()
    return float(np.dot(x_centered, y - y.mean()) / np.dot(x_centered, x_centered))


def confidence_level(z: float) -> float:
    magnitude = abs(z)
    for breakpoint, level in CONFIDENCE_BREAKPOINTS:
        if magnitude >= breakpoint:
            return level
    return FALLBACK_CONFIDENCE


def trailing_window(values: Sequence[float], end_index: int, size: int) -> Sequence[float] | None:
    """``size`` values ending at ``end_index`` inclusive, or ``None`` without enough history."""
    if end_index < size:
        return None
    return values[end_index - size + 1 : end_index + 1]
