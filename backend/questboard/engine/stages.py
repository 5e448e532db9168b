"""
Quest, stage and ledger value types.

Construction validates the counter and range invariants; nothing here
mutates state on its own. Dict round-tripping gives the persisted JSON shape.
Money is held as Decimal so that sums and remainders are exact.
"""
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, ClassVar, Optional, Union

from .errors import ValidationError

STAGE_STATUSES = ("pending", "in_progress", "completed")
QUEST_STATUSES = ("active", "completed", "archived")
ROLES = ("financial", "volunteer", "ambassador")


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def to_money(value) -> Decimal:
    """Floats go through their shortest repr, so 0.1 becomes Decimal('0.1')."""
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise ValidationError(f"amounts must be numbers, got {value!r}")
    return value if isinstance(value, Decimal) else Decimal(str(value))


def money_to_json(value: Decimal | None):
    """JSON number for a Decimal: int when integral, float otherwise."""
    if value is None:
        return None
    if value == value.to_integral_value():
        return int(value)
    return float(value)


def _check_counter(kind: str, collected, needed) -> None:
    if isinstance(needed, bool) or not isinstance(needed, (int, float, Decimal)) \
            or not math.isfinite(needed) or needed <= 0:
        raise ValidationError(f"{kind} requirement needs a positive 'needed' value")
    if isinstance(collected, bool) or not isinstance(collected, (int, float, Decimal)) \
            or not math.isfinite(collected) or collected < 0:
        raise ValidationError(f"{kind} requirement has a negative counter")
    if collected > needed:
        raise ValidationError(f"{kind} requirement collected {collected} exceeds needed {needed}")


@dataclass
class FinancialRequirement:
    needed: Decimal
    collected: Decimal = Decimal(0)
    currency: str = "RUB"
    kind: ClassVar[str] = "financial"

    def __post_init__(self):
        self.needed = to_money(self.needed)
        self.collected = to_money(self.collected)
        _check_counter(self.kind, self.collected, self.needed)

    @property
    def count(self):
        return self.collected

    def remaining(self):
        return self.needed - self.collected

    def to_dict(self) -> dict:
        return {
            "collected": money_to_json(self.collected),
            "needed": money_to_json(self.needed),
            "currency": self.currency,
        }


@dataclass
class VolunteerRequirement:
    needed: int
    registered: int = 0
    kind: ClassVar[str] = "volunteers"

    def __post_init__(self):
        if isinstance(self.needed, float) or isinstance(self.registered, float):
            raise ValidationError("volunteer counts must be whole numbers")
        _check_counter(self.kind, self.registered, self.needed)

    @property
    def count(self):
        return self.registered

    def remaining(self):
        return self.needed - self.registered

    def to_dict(self) -> dict:
        return {"registered": self.registered, "needed": self.needed}


@dataclass
class ItemsRequirement:
    needed: int
    collected: int = 0
    item_name: str = ""
    kind: ClassVar[str] = "items"

    def __post_init__(self):
        if isinstance(self.needed, float) or isinstance(self.collected, float):
            raise ValidationError("item counts must be whole numbers")
        _check_counter(self.kind, self.collected, self.needed)

    @property
    def count(self):
        return self.collected

    def remaining(self):
        return self.needed - self.collected

    def to_dict(self) -> dict:
        return {"collected": self.collected, "needed": self.needed, "itemName": self.item_name}


Requirement = Union[FinancialRequirement, VolunteerRequirement, ItemsRequirement]


def requirement_from_dict(data: dict | None) -> Optional[Requirement]:
    """Accepts the ``requirements`` object of a stage; exactly one kind may be set."""
    if not data:
        return None
    kinds = [k for k, v in data.items() if v]
    if len(kinds) != 1:
        raise ValidationError("a stage carries at most one requirement kind")
    kind = kinds[0]
    body = data[kind]
    try:
        if kind == "financial":
            return FinancialRequirement(
                needed=body["needed"],
                collected=body.get("collected", 0),
                currency=body.get("currency", "RUB"),
            )
        if kind == "volunteers":
            return VolunteerRequirement(needed=body["needed"], registered=body.get("registered", 0))
        if kind == "items":
            return ItemsRequirement(
                needed=body["needed"],
                collected=body.get("collected", 0),
                item_name=body.get("itemName", body.get("item_name", "")),
            )
    except KeyError as e:
        raise ValidationError(f"{kind} requirement is missing {e.args[0]!r}") from e
    raise ValidationError(f"unknown requirement kind {kind!r}")


@dataclass
class Stage:
    id: str
    title: str
    status: str = "pending"       # 'pending' | 'in_progress' | 'completed'
    progress: int = 0             # 0-100
    requirement: Optional[Requirement] = None
    description: str = ""
    deadline: Optional[str] = None

    def __post_init__(self):
        if not self.id:
            raise ValidationError("stage id is required")
        if self.status not in STAGE_STATUSES:
            raise ValidationError(f"unknown stage status {self.status!r}")
        if isinstance(self.progress, bool) or not isinstance(self.progress, int):
            raise ValidationError("stage progress must be an integer")
        if not 0 <= self.progress <= 100:
            raise ValidationError(f"stage progress {self.progress} outside [0, 100]")

    @property
    def requirement_kind(self) -> str | None:
        return self.requirement.kind if self.requirement else None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status,
            "progress": self.progress,
            "requirements": {self.requirement.kind: self.requirement.to_dict()} if self.requirement else None,
            "deadline": self.deadline,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Stage":
        return cls(
            id=str(data.get("id") or ""),
            title=data.get("title", ""),
            description=data.get("description", ""),
            status=data.get("status", "pending"),
            progress=data.get("progress", 0),
            requirement=requirement_from_dict(data.get("requirements")),
            deadline=data.get("deadline"),
        )


@dataclass
class Participation:
    user_id: str
    quest_id: str
    roles: set[str] = field(default_factory=set)
    joined_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "quest_id": self.quest_id,
            "roles": sorted(self.roles),
            "joined_at": self.joined_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Participation":
        return cls(
            user_id=data["user_id"],
            quest_id=data["quest_id"],
            roles=set(data.get("roles") or []),
            joined_at=data.get("joined_at") or utcnow_iso(),
        )


@dataclass(frozen=True)
class Contribution:
    id: str
    quest_id: str
    stage_id: str
    user_id: str
    role: str
    amount: Optional[Decimal] = None
    action: Optional[str] = None
    timestamp: str = field(default_factory=utcnow_iso)
    experience: int = 0

    def __post_init__(self):
        if self.amount is not None:
            object.__setattr__(self, "amount", to_money(self.amount))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "quest_id": self.quest_id,
            "stage_id": self.stage_id,
            "user_id": self.user_id,
            "role": self.role,
            "amount": money_to_json(self.amount),
            "action": self.action,
            "timestamp": self.timestamp,
            "experience": self.experience,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Contribution":
        return cls(**{k: data.get(k) for k in (
            "id", "quest_id", "stage_id", "user_id", "role", "amount", "action", "timestamp",
        )}, experience=data.get("experience", 0))


@dataclass(frozen=True)
class Achievement:
    id: str
    quest_id: str
    user_id: str
    icon: str
    title: str
    description: str
    rarity: str = "common"
    type: str = "custom"          # 'custom' | 'system'
    unlocked_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "quest_id": self.quest_id,
            "user_id": self.user_id,
            "icon": self.icon,
            "title": self.title,
            "description": self.description,
            "rarity": self.rarity,
            "type": self.type,
            "unlocked_at": self.unlocked_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Achievement":
        return cls(**data)


@dataclass
class Quest:
    id: str
    title: str
    stages: list[Stage] = field(default_factory=list)
    curator_id: Optional[str] = None
    status: str = "active"        # 'active' | 'completed' | 'archived'
    overall_progress: int = 0     # 0-100
    progress_color: str = "red"
    achievement: Optional[dict[str, str]] = None   # custom {icon, title, description}
    participations: list[Participation] = field(default_factory=list)
    contributions: list[Contribution] = field(default_factory=list)
    grants: list[Achievement] = field(default_factory=list)
    version: int = 0
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    def __post_init__(self):
        if not self.id:
            raise ValidationError("quest id is required")
        if self.status not in QUEST_STATUSES:
            raise ValidationError(f"unknown quest status {self.status!r}")
        if not 0 <= self.overall_progress <= 100:
            raise ValidationError(f"overall progress {self.overall_progress} outside [0, 100]")
        ids = [s.id for s in self.stages]
        if len(ids) != len(set(ids)):
            raise ValidationError("stage ids must be unique within a quest")
        if self.achievement is not None:
            missing = [k for k in ("icon", "title", "description") if not self.achievement.get(k)]
            if missing:
                raise ValidationError(f"custom achievement is missing {', '.join(missing)}")

    def stage(self, stage_id: str) -> Optional[Stage]:
        for s in self.stages:
            if s.id == stage_id:
                return s
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "curator_id": self.curator_id,
            "status": self.status,
            "overall_progress": self.overall_progress,
            "progress_color": self.progress_color,
            "achievement": self.achievement,
            "stages": [s.to_dict() for s in self.stages],
            "participations": [p.to_dict() for p in self.participations],
            "contributions": [c.to_dict() for c in self.contributions],
            "grants": [g.to_dict() for g in self.grants],
            "version": self.version,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Quest":
        return cls(
            id=str(data.get("id") or ""),
            title=data.get("title", ""),
            curator_id=data.get("curator_id"),
            status=data.get("status", "active"),
            overall_progress=data.get("overall_progress", 0),
            progress_color=data.get("progress_color", "red"),
            achievement=data.get("achievement"),
            stages=[Stage.from_dict(s) for s in data.get("stages") or []],
            participations=[Participation.from_dict(p) for p in data.get("participations") or []],
            contributions=[Contribution.from_dict(c) for c in data.get("contributions") or []],
            grants=[Achievement.from_dict(g) for g in data.get("grants") or []],
            version=data.get("version", 0),
            created_at=data.get("created_at") or utcnow_iso(),
            updated_at=data.get("updated_at") or utcnow_iso(),
        )
