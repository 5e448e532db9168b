"""
Experience rules for contributions — pure functions, no DB access.
"""
import math
from decimal import Decimal

MAX_LEVEL = 50
ACTION_XP = 10          # volunteer sign-ups and item pledges
MONEY_PER_XP = 100      # one XP per 100 currency units donated


def compute_xp(requirement_kind: str, amount: Decimal | float | None) -> int:
    """
    Experience earned by one contribution.
    Money earns floor(amount / 100); every other action earns a flat 10.
    """
    if requirement_kind == "financial":
        return int(math.floor((amount or 0) / MONEY_PER_XP))
    return ACTION_XP


def experience_to_next(level: int) -> int:
    """floor(100 * 1.5^(level - 1))"""
    return int(math.floor(100 * math.pow(1.5, max(level, 1) - 1)))


def compute_level(total_xp: int) -> int:
    """Experience accumulates; each threshold is compared against the running total."""
    level = 1
    while level < MAX_LEVEL and total_xp >= experience_to_next(level):
        level += 1
    return level


def level_title(level: int) -> str:
    titles = [
        (MAX_LEVEL, "Legend"),
        (40, "Master"),
        (30, "Expert"),
        (20, "Professional"),
        (15, "Seasoned"),
        (10, "Advanced"),
        (5,  "Active"),
        (3,  "Beginner"),
        (2,  "Apprentice"),
    ]
    for threshold, title in titles:
        if level >= threshold:
            return title
    return "Newcomer"
