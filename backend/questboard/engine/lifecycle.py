"""Quest lifecycle state machine.

States: active → completed → archived. Transitions only move forward.
"""
from .errors import InvalidStateError, ValidationError
from .stages import Quest

VALID_TRANSITIONS: dict[str, list[str]] = {
    "active": ["completed"],
    "completed": ["archived"],
    "archived": [],    # terminal
}

COMPLETION_POLICIES = ("auto", "curator")


def can_transition(current: str, target: str) -> bool:
    return target in VALID_TRANSITIONS.get(current, [])


def validate_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        allowed = VALID_TRANSITIONS.get(current, [])
        raise InvalidStateError(
            f"Cannot transition quest from '{current}' to '{target}'. "
            f"Allowed from '{current}': {allowed}"
        )


def transition(quest: Quest, target: str) -> str:
    """Move quest to target and return the previous status."""
    validate_transition(quest.status, target)
    previous = quest.status
    quest.status = target
    return previous


def ensure_active(quest: Quest) -> None:
    if quest.status != "active":
        raise InvalidStateError(f"Quest {quest.id} is {quest.status}; contributions are closed")


def validate_policy(policy: str) -> str:
    if policy not in COMPLETION_POLICIES:
        raise ValidationError(f"unknown completion policy {policy!r}")
    return policy


def should_auto_complete(quest: Quest, policy: str) -> bool:
    return policy == "auto" and quest.status == "active" and quest.overall_progress == 100


def ready_for_confirmation(quest: Quest) -> bool:
    """A curator may confirm completion only once every stage reached 100%."""
    return quest.status == "active" and quest.overall_progress == 100


def sync_stage_status(stage, auto_complete: bool) -> str | None:
    """
    Advance a requirement-bound stage after its counter moved.
    Returns the new status when it changed.
    """
    req = stage.requirement
    if req is None or stage.status == "completed":
        return None
    if auto_complete and req.count >= req.needed:
        stage.status = "completed"
        return stage.status
    if stage.status == "pending" and req.count > 0:
        stage.status = "in_progress"
        return stage.status
    return None
