"""Recommended follow-ups and display names per metric."""

from __future__ import annotations

ACTION_LIBRARY: dict[tuple[str, str], tuple[str, ...]] = {
    ("bounce_rate", "up"): (
        "Check mobile performance using Google PageSpeed Insights",
        "Review traffic sources in GA4 to identify low-quality channels",
        "A/B test landing page design and quiz flow",
    ),
    ("bounce_rate", "down"): (
        "Document what improved (traffic source, UX change, etc.)",
        "Scale successful traffic channels",
        "Apply learnings to other pages",
    ),
    ("sessions", "up"): (
        "Ensure infrastructure can handle traffic spike",
        "Capture leads while traffic is high (pop-ups, CTAs)",
        "Analyze traffic sources to understand what drove growth",
    ),
    ("sessions", "down"): (
        "Check if marketing campaigns paused or ads stopped",
        "Review SEO rankings for keyword drops",
        "Investigate technical issues (site down, crawl errors)",
    ),
    ("total_users", "up"): (
        "Capture new user data (email signups, surveys)",
        "Optimize onboarding flow for first-time visitors",
        "Track where new users came from in GA4",
    ),
    ("total_users", "down"): (
        "Review marketing spend and campaign performance",
        "Check if competitor launched similar product",
        "Audit site speed and technical issues",
    ),
    ("engagement_rate", "up"): (
        "Document successful content/features driving engagement",
        "Double down on high-engagement pages",
        "Test similar approaches on other pages",
    ),
    ("engagement_rate", "down"): (
        "Check for broken features or page errors",
        "Review content quality and relevance",
        "A/B test new CTAs and interactive elements",
    ),
    ("conversions", "up"): (
        "Scale what's working (traffic source, offer, CTA)",
        "Capture customer feedback to improve further",
        "Test higher price points or upsells",
    ),
    ("conversions", "down"): (
        "Check conversion funnel for drop-off points",
        "Review form fields (too many? confusing?)",
        "Test different offers or CTAs",
    ),
}

GENERIC_ACTIONS = (
    "Review recent changes that might have caused this shift",
    "Check GA4 for additional context and related metrics",
    "Monitor over next few days to confirm this is a trend",
)

DISPLAY_NAMES = {
    "sessions": "Sessions",
    "total_users": "Users",
    "conversions": "Conversions",
    "engagement_rate": "Engagement Rate",
    "bounce_rate": "Bounce Rate",
}


def action_items(metric: str, direction: str) -> tuple[str, ...]:
    return ACTION_LIBRARY.get((metric, direction), GENERIC_ACTIONS)


def display_name(metric: str) -> str:
    return DISPLAY_NAMES.get(metric, metric)


def format_metric_value(metric: str, value: float) -> str:
    if metric.endswith("_rate"):
        return f"{value * 100:.1f}%"
    return str(round(value))
