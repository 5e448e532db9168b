"""
Participation registry — who joined a quest and under which roles.

All role gates live in ACTION_ROLES so callers never check roles themselves.
"""
from .errors import InvalidStateError, ValidationError
from .stages import ROLES, Participation, Quest, utcnow_iso

# action -> role required to perform it (None: open to anyone)
ACTION_ROLES: dict[str, str | None] = {
    "donate":             None,
    "pledge_items":       None,
    "register_volunteer": "volunteer",
    "share":              "ambassador",
}

# requirement kind -> (action, role recorded on the contribution)
REQUIREMENT_ACTIONS: dict[str, tuple[str, str]] = {
    "financial":  ("donate", "financial"),
    "items":      ("pledge_items", "financial"),
    "volunteers": ("register_volunteer", "volunteer"),
}


def validate_role(role: str) -> str:
    if not role:
        raise ValidationError("role is required")
    if role not in ROLES:
        raise ValidationError(f"unknown role {role!r}; expected one of {', '.join(ROLES)}")
    return role


def find_participation(quest: Quest, user_id: str) -> Participation | None:
    for p in quest.participations:
        if p.user_id == user_id:
            return p
    return None


def participant_ids(quest: Quest) -> list[str]:
    return [p.user_id for p in quest.participations]


def join(quest: Quest, user_id: str, role: str, joined_at: str | None = None) -> tuple[Participation, bool]:
    """
    Enroll user_id under role. Re-joining with another role extends the
    existing participation. Returns (participation, changed).
    """
    if not user_id:
        raise ValidationError("user_id is required")
    validate_role(role)
    if quest.status != "active":
        raise InvalidStateError(f"Quest {quest.id} is {quest.status}; joining is closed")

    existing = find_participation(quest, user_id)
    if existing is not None:
        if role in existing.roles:
            return existing, False
        existing.roles.add(role)
        return existing, True

    participation = Participation(
        user_id=user_id,
        quest_id=quest.id,
        roles={role},
        joined_at=joined_at or utcnow_iso(),
    )
    quest.participations.append(participation)
    return participation, True


def can_perform(participation: Participation | None, action: str) -> bool:
    if action not in ACTION_ROLES:
        return False
    required = ACTION_ROLES[action]
    if required is None:
        return True
    return participation is not None and required in participation.roles
