import re
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

Role = Literal["financial", "volunteer", "ambassador"]
StageStatus = Literal["pending", "in_progress", "completed"]


def _validate_id(v: str) -> str:
    if not ID_RE.match(v):
        raise ValueError("must be 1-64 characters of letters, digits, '-' or '_'")
    return v


class FinancialRequirementIn(BaseModel):
    needed: Decimal = Field(gt=0, allow_inf_nan=False)
    collected: Decimal = Field(default=Decimal(0), ge=0, allow_inf_nan=False)
    currency: str = Field(default="RUB", min_length=3, max_length=3)


class VolunteerRequirementIn(BaseModel):
    needed: int = Field(gt=0)
    registered: int = Field(default=0, ge=0)


class ItemsRequirementIn(BaseModel):
    needed: int = Field(gt=0)
    collected: int = Field(default=0, ge=0)
    item_name: str = Field(min_length=1, max_length=100)


class RequirementsIn(BaseModel):
    financial: Optional[FinancialRequirementIn] = None
    volunteers: Optional[VolunteerRequirementIn] = None
    items: Optional[ItemsRequirementIn] = None

    @model_validator(mode="after")
    def at_most_one_kind(self):
        kinds = [k for k in ("financial", "volunteers", "items") if getattr(self, k) is not None]
        if len(kinds) > 1:
            raise ValueError("a stage carries at most one requirement kind")
        return self


class StageCreate(BaseModel):
    id: str
    title: str = Field(min_length=1, max_length=200)
    description: str = Field(default="", max_length=2000)
    progress: int = Field(default=0, ge=0, le=100)
    requirements: Optional[RequirementsIn] = None
    deadline: Optional[str] = None

    @field_validator("id")
    @classmethod
    def validate_id(cls, v):
        return _validate_id(v)


class AchievementIn(BaseModel):
    icon: str = Field(min_length=1, max_length=16)
    title: str = Field(min_length=1, max_length=100)
    description: str = Field(min_length=1, max_length=500)


class QuestCreate(BaseModel):
    id: str
    title: str = Field(min_length=1, max_length=200)
    stages: list[StageCreate] = Field(min_length=1)
    achievement: Optional[AchievementIn] = None
    model_config = {"extra": "ignore"}

    @field_validator("id")
    @classmethod
    def validate_id(cls, v):
        return _validate_id(v)

    def to_record(self, curator_id: str) -> dict:
        record = self.model_dump(exclude_none=True)
        record["curator_id"] = curator_id
        return record


class ContributionCreate(BaseModel):
    stage_id: str
    role: Role
    amount: Optional[Decimal] = Field(default=None, gt=0, allow_inf_nan=False)
    action: Optional[str] = Field(default=None, min_length=1, max_length=100)
    contribution_id: Optional[str] = None   # client idempotency key

    @field_validator("contribution_id")
    @classmethod
    def validate_contribution_id(cls, v):
        return _validate_id(v) if v is not None else v

    @model_validator(mode="after")
    def amount_or_action(self):
        if self.amount is None and self.action is None:
            raise ValueError("either amount or action is required")
        return self


class JoinRequest(BaseModel):
    role: Role


class StageUpdate(BaseModel):
    status: Optional[StageStatus] = None
    progress: Optional[int] = Field(default=None, ge=0, le=100)

    @model_validator(mode="after")
    def something_to_update(self):
        if self.status is None and self.progress is None:
            raise ValueError("status or progress is required")
        return self
