"""Ledger categories and the configured category sets.

Which categories count towards lifetime points and weekly boards is
configuration (``DOJO_NON_LIFETIME_CATEGORIES`` /
``DOJO_WEEKLY_EXCLUDED_CATEGORIES``). Anything not listed counts.
"""

from __future__ import annotations

from enum import Enum

from dojo.config import get_settings


class LedgerCategory(str, Enum):
    MANUAL = "manual"
    RULE_KEEPER = "rule_keeper"
    RULE_BREAKER = "rule_breaker"
    SKILL_PULSE = "skill_pulse"
    SPOTLIGHT = "spotlight"
    CHALLENGE = "challenge"
    BADGE_AWARD = "badge_award"
    SKILL_SPRINT = "skill_sprint"
    AVATAR_DAILY = "avatar_daily"
    LEADERBOARD_BONUS = "leaderboard_bonus"
    CAMP_ROLE = "camp_role"
    EVENT_BONUS = "event_bonus"
    REDEEM = "redeem"


def non_lifetime_categories() -> frozenset[str]:
    """Categories excluded from lifetime points (and therefore from leveling)."""
    return frozenset(get_settings().non_lifetime_categories)


def weekly_excluded_categories() -> frozenset[str]:
    """Categories excluded from the weekly leaderboard sum."""
    return frozenset(get_settings().weekly_excluded_categories)


def counts_towards_lifetime(category: str) -> bool:
    return category not in non_lifetime_categories()
