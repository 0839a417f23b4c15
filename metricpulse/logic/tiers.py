"""Subscription tier policy table."""

from __future__ import annotations

import pathlib
from dataclasses import dataclass
from functools import lru_cache

import yaml

TIERS_PATH = pathlib.Path(__file__).with_name("tiers.yml")
DEFAULT_TIER = "starter"


@dataclass(frozen=True, slots=True)
class TierPolicy:
    name: str
    label: str
    lookback_days: int
    min_days_between_reports: int
    reports_per_day: int
    properties: int


class TierPolicies:
    def __init__(self, policies: dict[str, TierPolicy], default: str = DEFAULT_TIER) -> None:
        if default not in policies:
            raise KeyError(f"Default tier {default!r} missing from policy table")
        self._policies = policies
        self._default = default

    def __contains__(self, tier: str) -> bool:
        return tier in self._policies

    def for_tier(self, tier: str | None) -> TierPolicy:
        """Policy for ``tier``; unknown or missing tiers get the default policy."""
        if tier and tier in self._policies:
            return self._policies[tier]
        return self._policies[self._default]


def load_tier_policies(path: pathlib.Path = TIERS_PATH) -> TierPolicies:
    data = yaml.safe_load(path.read_text())
    policies = {item["name"]: TierPolicy(**item) for item in data}
    return TierPolicies(policies)


@lru_cache(maxsize=1)
def default_policies() -> TierPolicies:
    return load_tier_policies()
