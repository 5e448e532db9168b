"""
Quest engine service: the only writer of quest progress.

Every progress-affecting operation runs load → check → mutate → recompute →
unlock → lifecycle → save under one per-quest lock, then emits events once
the lock is released. A failure anywhere leaves the stored quest untouched.
"""
import logging
from contextlib import contextmanager
from decimal import Decimal
from functools import lru_cache
from threading import Lock
from typing import Any, Iterator

from .config import get_settings
from .db import QuestRepository, get_repository
from .engine import events as ev
from .engine.achievements import crossed_completion, unlock, unlock_all
from .engine.errors import (
    InvalidStateError, NotFoundError, PermissionDeniedError, ValidationError,
)
from .engine.ledger import (
    apply_contribution, check_contribution, find_contribution, is_replay,
    make_contribution_id, validate_request,
)
from .engine.lifecycle import (
    ensure_active, ready_for_confirmation, should_auto_complete,
    sync_stage_status, transition, validate_policy,
)
from .engine.participation import (
    REQUIREMENT_ACTIONS, can_perform, find_participation, join,
)
from .engine.progress import recompute
from .engine.stages import (
    STAGE_STATUSES, Achievement, Contribution, Participation, Quest, utcnow_iso,
)
from .engine.xp import compute_level, compute_xp, experience_to_next, level_title

logger = logging.getLogger(__name__)

Pending = list[tuple[str, dict[str, Any]]]


class QuestEngine:

    def __init__(
        self,
        repository: QuestRepository,
        events: ev.EventBus | None = None,
        completion_policy: str = "auto",
        stage_auto_complete: bool = True,
        moderators: tuple[str, ...] = (),
    ):
        self.repository = repository
        self.events = events or ev.EventBus()
        self.completion_policy = validate_policy(completion_policy)
        self.stage_auto_complete = stage_auto_complete
        self.moderators = set(moderators)
        # quest_id -> [lock, holders + waiters]; entries go away when unused
        self._locks: dict[str, list] = {}
        self._locks_guard = Lock()

    # ── Internals ─────────────────────────────────────────────────────────────

    @contextmanager
    def _lock_for(self, quest_id: str) -> Iterator[None]:
        with self._locks_guard:
            entry = self._locks.get(quest_id)
            if entry is None:
                entry = self._locks[quest_id] = [Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[quest_id]

    def _load(self, quest_id: str) -> Quest:
        quest = self.repository.get(quest_id)
        if quest is None:
            raise NotFoundError(f"Quest {quest_id} not found")
        return quest

    def _commit(self, quest: Quest) -> None:
        quest.updated_at = utcnow_iso()
        self.repository.save(quest)

    def _emit_all(self, pending: Pending) -> None:
        for event, payload in pending:
            self.events.emit(event, **payload)

    def _require_curator(self, quest: Quest, actor_id: str) -> None:
        if actor_id and (actor_id == quest.curator_id or actor_id in self.moderators):
            return
        raise PermissionDeniedError(f"Only the curator or a moderator can manage quest {quest.id}")

    def _settle(self, quest: Quest, previous: int, current: int, pending: Pending) -> list[Achievement]:
        """Grant achievements and advance the lifecycle after a recompute."""
        if current != previous:
            pending.append((ev.PROGRESS_CHANGED, {
                "quest_id": quest.id,
                "previous": previous,
                "overall_progress": current,
                "progress_color": quest.progress_color,
            }))

        granted: list[Achievement] = []
        if crossed_completion(previous, current):
            granted = unlock_all(quest)
            for grant in granted:
                pending.append((ev.ACHIEVEMENT_UNLOCKED, {"quest_id": quest.id, "achievement": grant.to_dict()}))

        if should_auto_complete(quest, self.completion_policy):
            old_status = transition(quest, "completed")
            pending.append((ev.QUEST_STATUS_CHANGED, {
                "quest_id": quest.id, "previous": old_status, "status": quest.status,
            }))
        return granted

    # ── Authoring ─────────────────────────────────────────────────────────────

    def create_quest(self, quest: Quest) -> Quest:
        """Register a quest produced by the authoring flow."""
        if quest.status != "active":
            raise ValidationError("new quests start active")
        if quest.contributions or quest.grants:
            raise ValidationError("new quests carry no contributions or grants")
        if not quest.stages:
            raise ValidationError("a quest needs at least one stage")
        with self._lock_for(quest.id):
            if self.repository.get(quest.id) is not None:
                raise ValidationError(f"Quest {quest.id} already exists")
            quest.version = 0
            for stage in quest.stages:
                sync_stage_status(stage, self.stage_auto_complete)
            recompute(quest)
            # No participants yet, so a quest authored at 100% completes without grants.
            completed = should_auto_complete(quest, self.completion_policy)
            if completed:
                transition(quest, "completed")
            self._commit(quest)
        logger.info("Quest created: %s (%d stages, %d%%, %s)",
                    quest.id, len(quest.stages), quest.overall_progress, quest.status)
        if completed:
            self.events.emit(ev.QUEST_STATUS_CHANGED, quest_id=quest.id, previous="active", status=quest.status)
        return quest

    def get_quest(self, quest_id: str) -> Quest:
        return self._load(quest_id)

    # ── Contributions ─────────────────────────────────────────────────────────

    def contribute(
        self,
        quest_id: str,
        stage_id: str,
        user_id: str,
        role: str,
        amount: Decimal | float | None = None,
        action: str | None = None,
        contribution_id: str | None = None,
        timestamp: str | None = None,
    ) -> Contribution:
        validate_request(quest_id, stage_id, user_id, role, amount, action)
        timestamp = timestamp or utcnow_iso()
        contribution_id = contribution_id or make_contribution_id(quest_id, stage_id, user_id, timestamp)
        pending: Pending = []

        with self._lock_for(quest_id):
            quest = self._load(quest_id)
            existing = find_contribution(quest, contribution_id)
            if existing is not None:
                if not is_replay(existing, stage_id, user_id, role, amount):
                    raise ValidationError(f"Contribution id {contribution_id} is already used by another contribution")
                logger.info("Duplicate contribution %s... ignored", contribution_id[:8])
                return existing

            stage = quest.stage(stage_id)
            if stage is None:
                raise NotFoundError(f"Stage {stage_id} not found in quest {quest_id}")
            participation = find_participation(quest, user_id)
            check_contribution(quest, stage, user_id, role, amount, participation)

            kind = stage.requirement_kind
            contribution = Contribution(
                id=contribution_id,
                quest_id=quest_id,
                stage_id=stage_id,
                user_id=user_id,
                role=role,
                amount=None if kind == "volunteers" else amount,
                action=action or REQUIREMENT_ACTIONS[kind][0],
                timestamp=timestamp,
                experience=compute_xp(kind, amount),
            )
            apply_contribution(stage, contribution)
            quest.contributions.append(contribution)

            # Donors and item pledgers are enrolled on their first contribution.
            if role == "financial":
                enrolled, changed = join(quest, user_id, role, joined_at=timestamp)
                if changed:
                    pending.append((ev.PARTICIPANT_JOINED, {"quest_id": quest_id, "participation": enrolled.to_dict()}))

            sync_stage_status(stage, self.stage_auto_complete)
            previous, current = recompute(quest)
            pending.insert(0, (ev.CONTRIBUTION_RECORDED, {
                "quest_id": quest_id, "contribution": contribution.to_dict(),
            }))
            self._settle(quest, previous, current, pending)
            self._commit(quest)

        logger.info("Contribution to %s/%s by %s...: %s (+%d XP), quest at %d%%",
                    quest_id, stage_id, user_id[:8], contribution.amount or contribution.action,
                    contribution.experience, current)
        self._emit_all(pending)
        return contribution

    # ── Participation ─────────────────────────────────────────────────────────

    def join(self, quest_id: str, user_id: str, role: str) -> Participation:
        with self._lock_for(quest_id):
            quest = self._load(quest_id)
            participation, changed = join(quest, user_id, role)
            if changed:
                self._commit(quest)
        if changed:
            logger.info("User %s... joined %s as %s", user_id[:8], quest_id, role)
            self.events.emit(ev.PARTICIPANT_JOINED, quest_id=quest_id, participation=participation.to_dict())
        return participation

    def share(self, quest_id: str, user_id: str) -> dict[str, Any]:
        """Ambassador share card; requires the ambassador role."""
        quest = self._load(quest_id)
        if not can_perform(find_participation(quest, user_id), "share"):
            raise PermissionDeniedError("Sharing requires the ambassador role")
        logger.info("Quest %s shared by %s...", quest_id, user_id[:8])
        return {
            "quest_id": quest.id,
            "title": quest.title,
            "overall_progress": quest.overall_progress,
            "progress_color": quest.progress_color,
            "status": quest.status,
            "shared_by": user_id,
        }

    # ── Curator actions ───────────────────────────────────────────────────────

    def update_stage(
        self,
        quest_id: str,
        stage_id: str,
        actor_id: str,
        status: str | None = None,
        progress: int | None = None,
    ) -> Quest:
        if status is None and progress is None:
            raise ValidationError("nothing to update")
        if status is not None and status not in STAGE_STATUSES:
            raise ValidationError(f"unknown stage status {status!r}")
        if progress is not None and (isinstance(progress, bool) or not isinstance(progress, int) or not 0 <= progress <= 100):
            raise ValidationError("progress must be an integer in [0, 100]")
        pending: Pending = []

        with self._lock_for(quest_id):
            quest = self._load(quest_id)
            self._require_curator(quest, actor_id)
            ensure_active(quest)
            stage = quest.stage(stage_id)
            if stage is None:
                raise NotFoundError(f"Stage {stage_id} not found in quest {quest_id}")
            if progress is not None:
                if stage.requirement is not None:
                    raise InvalidStateError(f"Stage {stage_id} progress is derived from its requirement")
                stage.progress = progress
            if status is not None:
                stage.status = status
            previous, current = recompute(quest)
            self._settle(quest, previous, current, pending)
            self._commit(quest)

        logger.info("Stage %s/%s updated by %s...: status=%s progress=%s",
                    quest_id, stage_id, actor_id[:8], stage.status, stage.progress)
        self._emit_all(pending)
        return quest

    def complete_quest(self, quest_id: str, actor_id: str) -> Quest:
        """Curator confirmation of a quest that reached 100%."""
        with self._lock_for(quest_id):
            quest = self._load(quest_id)
            self._require_curator(quest, actor_id)
            if quest.status == "active" and not ready_for_confirmation(quest):
                raise InvalidStateError(f"Quest {quest_id} is at {quest.overall_progress}%, not 100%")
            previous = transition(quest, "completed")
            self._commit(quest)
        logger.info("Quest %s completed by %s...", quest_id, actor_id[:8])
        self.events.emit(ev.QUEST_STATUS_CHANGED, quest_id=quest_id, previous=previous, status=quest.status)
        return quest

    def archive_quest(self, quest_id: str, actor_id: str) -> Quest:
        with self._lock_for(quest_id):
            quest = self._load(quest_id)
            self._require_curator(quest, actor_id)
            previous = transition(quest, "archived")
            self._commit(quest)
        logger.info("Quest %s archived by %s...", quest_id, actor_id[:8])
        self.events.emit(ev.QUEST_STATUS_CHANGED, quest_id=quest_id, previous=previous, status=quest.status)
        return quest

    # ── Achievements ──────────────────────────────────────────────────────────

    def grant_achievement(self, quest_id: str, user_id: str) -> Achievement:
        """Idempotent grant for one participant of a quest at 100%."""
        with self._lock_for(quest_id):
            quest = self._load(quest_id)
            if quest.overall_progress != 100:
                raise InvalidStateError(f"Quest {quest_id} is at {quest.overall_progress}%, not 100%")
            if find_participation(quest, user_id) is None:
                raise NotFoundError(f"User {user_id} does not participate in quest {quest_id}")
            grant, created = unlock(quest, user_id)
            if created:
                self._commit(quest)
        if created:
            self.events.emit(ev.ACHIEVEMENT_UNLOCKED, quest_id=quest_id, achievement=grant.to_dict())
        return grant

    def achievements_for_user(self, user_id: str) -> list[Achievement]:
        return [g for q in self.repository.list_quests() for g in q.grants if g.user_id == user_id]

    def experience_for_user(self, user_id: str) -> dict[str, Any]:
        total_xp = sum(
            c.experience
            for q in self.repository.list_quests()
            for c in q.contributions
            if c.user_id == user_id
        )
        level = compute_level(total_xp)
        return {
            "user_id": user_id,
            "total_xp": total_xp,
            "level": level,
            "level_title": level_title(level),
            "experience_to_next": experience_to_next(level),
        }


@lru_cache(maxsize=1)
def get_engine() -> QuestEngine:
    settings = get_settings()
    return QuestEngine(
        get_repository(),
        completion_policy=settings.completion_policy,
        stage_auto_complete=settings.stage_auto_complete,
        moderators=settings.moderators,
    )
