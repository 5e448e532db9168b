"""
Contribution ledger rules — pure functions, no DB access.

The service layer calls validate_request, then check_contribution and
apply_contribution under the quest lock, so the read-check-increment
sequence is a single unit.
"""
import hashlib
import math
from decimal import Decimal

from .errors import OvercommitError, InvalidStateError, PermissionDeniedError, ValidationError
from .lifecycle import ensure_active
from .participation import REQUIREMENT_ACTIONS, can_perform, validate_role
from .stages import Contribution, Participation, Quest, Stage, to_money


def make_contribution_id(quest_id: str, stage_id: str, user_id: str, timestamp: str) -> str:
    raw = f"{quest_id}:{stage_id}:{user_id}:{timestamp}"
    return hashlib.sha256(raw.encode()).hexdigest()[:32]


def validate_request(quest_id, stage_id, user_id, role, amount=None, action=None) -> None:
    """Shape checks that need no stored state. Raises ValidationError."""
    for name, value in (("quest_id", quest_id), ("stage_id", stage_id), ("user_id", user_id)):
        if not value:
            raise ValidationError(f"{name} is required")
    validate_role(role)
    if amount is None and not action:
        raise ValidationError("either amount or action is required")
    if amount is not None:
        if isinstance(amount, bool) or not isinstance(amount, (int, float, Decimal)):
            raise ValidationError("amount must be a number")
        if not math.isfinite(amount) or amount <= 0:
            raise ValidationError("amount must be greater than zero")
    if action is not None and not isinstance(action, str):
        raise ValidationError("action must be a string")


def find_contribution(quest: Quest, contribution_id: str) -> Contribution | None:
    for c in quest.contributions:
        if c.id == contribution_id:
            return c
    return None


def is_replay(existing: Contribution, stage_id: str, user_id: str, role: str, amount=None) -> bool:
    """True when a resubmitted key describes the contribution already recorded under it."""
    if (existing.stage_id, existing.user_id, existing.role) != (stage_id, user_id, role):
        return False
    if existing.amount is None:
        return amount in (None, 1)
    return amount is not None and to_money(amount) == existing.amount


def check_contribution(
    quest: Quest,
    stage: Stage,
    user_id: str,
    role: str,
    amount=None,
    participation: Participation | None = None,
) -> None:
    """
    State checks against the current counters. Raises InvalidStateError,
    PermissionDeniedError, ValidationError or OvercommitError; never mutates.
    """
    ensure_active(quest)
    req = stage.requirement
    if req is None:
        raise InvalidStateError(f"Stage {stage.id} has no requirement to contribute to")

    action, expected_role = REQUIREMENT_ACTIONS[req.kind]
    if role != expected_role:
        raise ValidationError(f"{req.kind} contributions use role '{expected_role}', got '{role}'")
    if not can_perform(participation, action):
        raise PermissionDeniedError(f"Joining as '{expected_role}' is required before {action.replace('_', ' ')}")

    if req.kind == "volunteers":
        if amount not in (None, 1):
            raise ValidationError("a volunteer registration counts exactly one person")
        if any(c.stage_id == stage.id and c.user_id == user_id for c in quest.contributions):
            raise ValidationError(f"User already registered for stage {stage.id}")
        if req.registered >= req.needed:
            raise OvercommitError(f"Stage {stage.id} already has {req.needed} volunteers")
        return

    if amount is None:
        raise ValidationError(f"{req.kind} contributions need an amount")
    if req.kind == "items" and amount != int(amount):
        raise ValidationError("item pledges must be whole numbers")
    if req.kind == "financial":
        amount = to_money(amount)
    if amount > req.remaining():
        raise OvercommitError(
            f"Contribution of {amount} exceeds remaining need {req.remaining()} for stage {stage.id}"
        )


def apply_contribution(stage: Stage, contribution: Contribution) -> None:
    req = stage.requirement
    if req.kind == "volunteers":
        req.registered += 1
    elif req.kind == "items":
        req.collected += int(contribution.amount)
    else:
        req.collected += contribution.amount
