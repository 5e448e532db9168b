"""
Achievement unlocking — pure functions over the quest record.

A quest grants one achievement per participant once its overall progress
reaches 100. Grants are keyed by (quest_id, user_id) and never duplicated.
"""
from .errors import ValidationError
from .stages import Achievement, Quest, utcnow_iso
from .participation import participant_ids

DEFAULT_ACHIEVEMENT = {
    "icon": "🏆",
    "title": "Quest Complete",
    "description": "Helped a civic quest reach 100%",
}


def achievement_id(quest_id: str) -> str:
    return f"custom-{quest_id}"


def crossed_completion(previous: int, current: int) -> bool:
    return previous < 100 and current == 100


def achievement_payload(quest: Quest) -> dict[str, str]:
    return quest.achievement or DEFAULT_ACHIEVEMENT


def find_grant(quest: Quest, user_id: str) -> Achievement | None:
    for g in quest.grants:
        if g.user_id == user_id:
            return g
    return None


def unlock(quest: Quest, user_id: str, now: str | None = None) -> tuple[Achievement, bool]:
    """
    Grant the quest achievement to user_id. Returns (achievement, created);
    an existing grant is returned unchanged.
    """
    if not user_id:
        raise ValidationError("user_id is required")
    existing = find_grant(quest, user_id)
    if existing is not None:
        return existing, False

    payload = achievement_payload(quest)
    grant = Achievement(
        id=achievement_id(quest.id),
        quest_id=quest.id,
        user_id=user_id,
        icon=payload["icon"],
        title=payload["title"],
        description=payload["description"],
        rarity="common",
        type="custom" if quest.achievement else "system",
        unlocked_at=now or utcnow_iso(),
    )
    quest.grants.append(grant)
    return grant, True


def unlock_all(quest: Quest, now: str | None = None) -> list[Achievement]:
    """Grant every current participant; returns only newly created grants."""
    now = now or utcnow_iso()
    created = []
    for user_id in participant_ids(quest):
        grant, is_new = unlock(quest, user_id, now)
        if is_new:
            created.append(grant)
    return created
