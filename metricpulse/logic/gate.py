"""Per-subscriber delivery eligibility."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta

from metricpulse.logic.tiers import TierPolicies, default_policies
from metricpulse.utils.dates import (
    WEEKDAY_ABBREVIATIONS,
    ensure_utc,
    in_timezone,
    timezone_name,
    weekday_abbreviation,
)

logger = logging.getLogger(__name__)

INACTIVE_SUBSCRIPTION = "inactive_subscription"
DISABLED = "disabled"
NOT_SCHEDULED_TODAY = "not_scheduled_today"
FREQUENCY_LIMIT = "frequency_limit"
OUTSIDE_DELIVERY_WINDOW = "outside_delivery_window"
INVALID_TIMEZONE = "invalid_timezone"

DELIVERY_WINDOW_HOURS = 1
# "server": weekday in the scheduler's zone; "subscriber": weekday in the subscriber's zone
REPORT_DAY_TIMEZONE_MODE = os.environ.get("REPORT_DAY_TIMEZONE_MODE", "server")


@dataclass(slots=True)
class SubscriberSchedulingState:
    user_id: str
    subscription_tier: str | None
    subscription_status: str | None
    delivery_time: time
    timezone: str
    enabled: bool = True
    report_days: frozenset[str] = field(default_factory=lambda: frozenset(WEEKDAY_ABBREVIATIONS))
    last_email_sent_at: datetime | None = None


@dataclass(frozen=True, slots=True)
class GateDecision:
    eligible: bool
    reason: str | None = None


ELIGIBLE = GateDecision(eligible=True)


def hour_distance(a: int, b: int) -> int:
    """Distance between two hours of the day on a 24-hour clock face."""
    delta = abs(a - b) % 24
    return min(delta, 24 - delta)


def report_day_timezone(state: SubscriberSchedulingState, mode: str | None = None) -> str:
    if (mode or REPORT_DAY_TIMEZONE_MODE) == "subscriber":
        return state.timezone
    return timezone_name()


def is_eligible_now(
    state: SubscriberSchedulingState,
    now: datetime,
    *,
    policies: TierPolicies | None = None,
    report_day_tz: str | None = None,
) -> GateDecision:
    """Decide whether ``state`` should be processed on the tick at ``now``.

    Checks short-circuit in order. ``report_day_tz`` names the zone used to
    decide which weekday it is; by default that is the scheduler's zone.
    """
    policies = policies or default_policies()
    if state.subscription_status != "active":
        return GateDecision(False, INACTIVE_SUBSCRIPTION)
    if not state.enabled:
        return GateDecision(False, DISABLED)

    try:
        today = in_timezone(now, report_day_tz or report_day_timezone(state)).date()
        local_now = in_timezone(now, state.timezone)
    except (ValueError, KeyError):
        logger.warning("Invalid timezone for user %s: %s", state.user_id, state.timezone)
        return GateDecision(False, INVALID_TIMEZONE)

    if weekday_abbreviation(today) not in state.report_days:
        return GateDecision(False, NOT_SCHEDULED_TODAY)

    floor_days = policies.for_tier(state.subscription_tier).min_days_between_reports
    if floor_days and state.last_email_sent_at is not None:
        if ensure_utc(now) - ensure_utc(state.last_email_sent_at) < timedelta(days=floor_days):
            return GateDecision(False, FREQUENCY_LIMIT)

    if hour_distance(local_now.hour, state.delivery_time.hour) > DELIVERY_WINDOW_HOURS:
        return GateDecision(False, OUTSIDE_DELIVERY_WINDOW)
    return ELIGIBLE
