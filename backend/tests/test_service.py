"""
Engine service tests against the in-memory local repository.
"""
import threading
from decimal import Decimal
from unittest.mock import patch

import pytest
from questboard.db import LocalQuestRepository
from questboard.engine import events as ev
from questboard.engine.errors import (
    InvalidStateError, NotFoundError, OvercommitError, PermissionDeniedError,
    QuotaExceededError, ValidationError,
)
from questboard.engine.stages import (
    Quest, Stage, FinancialRequirement, VolunteerRequirement, ItemsRequirement,
)
from questboard.service import QuestEngine

CUSTOM = {"icon": "🌉", "title": "Bridge Builder", "description": "Rebuilt the footbridge"}


def make_engine(**kwargs) -> QuestEngine:
    return QuestEngine(LocalQuestRepository(), moderators=("mod",), **kwargs)


def single_stage_quest(collected=800, needed=1000, achievement=CUSTOM) -> Quest:
    return Quest(id="q1", title="Footbridge", curator_id="curator", achievement=achievement, stages=[
        Stage(id="fund", title="Fund", requirement=FinancialRequirement(needed=needed, collected=collected)),
    ])


def mixed_quest() -> Quest:
    return Quest(id="q2", title="Park", curator_id="curator", stages=[
        Stage(id="fund", title="Fund", requirement=FinancialRequirement(needed=1000)),
        Stage(id="hands", title="Hands", requirement=VolunteerRequirement(needed=2)),
        Stage(id="bags", title="Bags", requirement=ItemsRequirement(needed=10, item_name="bags")),
        Stage(id="permit", title="Permit"),
    ])


def record_events(engine: QuestEngine) -> list[dict]:
    seen: list[dict] = []
    for name in ev.EVENT_TYPES:
        engine.events.listen(name, seen.append)
    return seen


class TestCreateQuest:
    def test_progress_computed_on_create(self):
        engine = make_engine()
        quest = engine.create_quest(single_stage_quest())
        assert quest.overall_progress == 80
        assert quest.progress_color == "green"
        assert quest.stages[0].status == "in_progress"
        assert quest.version == 1

    def test_duplicate_id(self):
        engine = make_engine()
        engine.create_quest(single_stage_quest())
        with pytest.raises(ValidationError):
            engine.create_quest(single_stage_quest())

    def test_needs_stages(self):
        with pytest.raises(ValidationError):
            make_engine().create_quest(Quest(id="q", title="t"))

    def test_authored_at_100_is_completed(self):
        engine = make_engine()
        seen = record_events(engine)
        quest = engine.create_quest(single_stage_quest(collected=10, needed=10))
        assert quest.overall_progress == 100
        assert quest.progress_color == "victory"
        assert quest.status == "completed"
        assert quest.grants == []
        assert [e["event"] for e in seen] == [ev.QUEST_STATUS_CHANGED]
        with pytest.raises(InvalidStateError):
            engine.contribute("q1", "fund", "u1", "financial", amount=1)
        with pytest.raises(InvalidStateError):
            engine.join("q1", "u1", "volunteer")

    def test_authored_at_100_stays_active_under_curator_policy(self):
        engine = make_engine(completion_policy="curator")
        quest = engine.create_quest(single_stage_quest(collected=10, needed=10))
        assert quest.status == "active"
        assert engine.complete_quest("q1", "curator").status == "completed"

    def test_unknown_quest(self):
        with pytest.raises(NotFoundError):
            make_engine().get_quest("missing")


class TestScenarios:
    def test_a_overcommit_rejected(self):
        engine = make_engine()
        engine.create_quest(single_stage_quest())
        with pytest.raises(OvercommitError):
            engine.contribute("q1", "fund", "u1", "financial", amount=300)
        quest = engine.get_quest("q1")
        assert quest.stages[0].requirement.collected == 800
        assert quest.contributions == []

    def test_b_exact_fill(self):
        engine = make_engine(completion_policy="curator")
        engine.create_quest(single_stage_quest())
        engine.contribute("q1", "fund", "u1", "financial", amount=200)
        quest = engine.get_quest("q1")
        assert quest.stages[0].requirement.collected == 1000
        assert quest.stages[0].progress == 100
        assert quest.stages[0].status == "completed"

    def test_c_two_stages_75_is_yellow(self):
        engine = make_engine()
        engine.create_quest(Quest(id="q3", title="t", curator_id="curator", stages=[
            Stage(id="a", title="a", requirement=FinancialRequirement(needed=100, collected=100)),
            Stage(id="b", title="b", requirement=FinancialRequirement(needed=100, collected=40)),
        ]))
        engine.contribute("q3", "b", "u1", "financial", amount=10)
        quest = engine.get_quest("q3")
        assert quest.overall_progress == 75
        assert quest.progress_color == "yellow"

    def test_d_completion_grants_once_and_closes(self):
        engine = make_engine()
        engine.create_quest(single_stage_quest())
        engine.join("q1", "v1", "volunteer")
        engine.join("q1", "amb", "ambassador")
        seen = record_events(engine)

        engine.contribute("q1", "fund", "donor", "financial", amount=200)

        quest = engine.get_quest("q1")
        assert quest.overall_progress == 100
        assert quest.progress_color == "victory"
        assert quest.status == "completed"
        assert sorted(g.user_id for g in quest.grants) == ["amb", "donor", "v1"]
        assert all(g.title == "Bridge Builder" for g in quest.grants)

        unlocked = [e for e in seen if e["event"] == ev.ACHIEVEMENT_UNLOCKED]
        assert len(unlocked) == 3
        statuses = [e for e in seen if e["event"] == ev.QUEST_STATUS_CHANGED]
        assert statuses[0]["status"] == "completed"

        with pytest.raises(InvalidStateError):
            engine.contribute("q1", "fund", "late", "financial", amount=1)

    def test_grant_twice_is_idempotent(self):
        engine = make_engine()
        engine.create_quest(single_stage_quest())
        engine.contribute("q1", "fund", "donor", "financial", amount=200)
        first = engine.grant_achievement("q1", "donor")
        second = engine.grant_achievement("q1", "donor")
        assert first == second
        assert len([g for g in engine.get_quest("q1").grants if g.user_id == "donor"]) == 1


class TestContribute:
    def test_donor_is_enrolled(self):
        engine = make_engine()
        engine.create_quest(mixed_quest())
        engine.contribute("q2", "fund", "u1", "financial", amount=250)
        quest = engine.get_quest("q2")
        assert quest.participations[0].user_id == "u1"
        assert quest.participations[0].roles == {"financial"}
        assert quest.contributions[0].experience == 2
        assert quest.contributions[0].action == "donate"

    def test_volunteer_needs_to_join_first(self):
        engine = make_engine()
        engine.create_quest(mixed_quest())
        with pytest.raises(PermissionDeniedError):
            engine.contribute("q2", "hands", "u1", "volunteer", action="register")
        engine.join("q2", "u1", "volunteer")
        contribution = engine.contribute("q2", "hands", "u1", "volunteer", action="register")
        assert contribution.amount is None
        assert engine.get_quest("q2").stage("hands").requirement.registered == 1

    def test_item_pledge(self):
        engine = make_engine()
        engine.create_quest(mixed_quest())
        engine.contribute("q2", "bags", "u1", "financial", amount=4)
        quest = engine.get_quest("q2")
        assert quest.stage("bags").requirement.collected == 4
        assert quest.stage("bags").progress == 40
        assert quest.overall_progress == 10

    def test_unknown_stage(self):
        engine = make_engine()
        engine.create_quest(mixed_quest())
        with pytest.raises(NotFoundError):
            engine.contribute("q2", "nope", "u1", "financial", amount=1)

    def test_stage_without_requirement(self):
        engine = make_engine()
        engine.create_quest(mixed_quest())
        with pytest.raises(InvalidStateError):
            engine.contribute("q2", "permit", "u1", "financial", amount=1)

    def test_validation_before_lookup(self):
        engine = make_engine()
        with pytest.raises(ValidationError):
            engine.contribute("missing", "fund", "u1", "financial", amount=-1)

    def test_resubmitted_key_counts_once(self):
        engine = make_engine()
        engine.create_quest(mixed_quest())
        first = engine.contribute("q2", "fund", "u1", "financial", amount=100, contribution_id="pay-1")
        again = engine.contribute("q2", "fund", "u1", "financial", amount=100, contribution_id="pay-1")
        assert again == first
        quest = engine.get_quest("q2")
        assert quest.stage("fund").requirement.collected == 100
        assert len(quest.contributions) == 1

    def test_reused_key_for_other_contribution_rejected(self):
        engine = make_engine()
        engine.create_quest(mixed_quest())
        engine.contribute("q2", "fund", "alice", "financial", amount=100, contribution_id="pay-1")
        with pytest.raises(ValidationError):
            engine.contribute("q2", "fund", "bob", "financial", amount=500, contribution_id="pay-1")
        with pytest.raises(ValidationError):
            engine.contribute("q2", "fund", "alice", "financial", amount=500, contribution_id="pay-1")
        quest = engine.get_quest("q2")
        assert quest.stage("fund").requirement.collected == 100
        assert [c.user_id for c in quest.contributions] == ["alice"]

    def test_fractional_donations_fill_stage(self):
        engine = make_engine()
        engine.create_quest(single_stage_quest(collected=0, needed=0.3))
        engine.contribute("q1", "fund", "u1", "financial", amount=0.1)
        engine.contribute("q1", "fund", "u2", "financial", amount=0.2)
        quest = engine.get_quest("q1")
        assert quest.stages[0].requirement.collected == Decimal("0.3")
        assert quest.overall_progress == 100
        assert quest.status == "completed"

    def test_natural_key_from_timestamp(self):
        engine = make_engine()
        engine.create_quest(mixed_quest())
        ts = "2026-06-01T12:00:00+00:00"
        engine.contribute("q2", "fund", "u1", "financial", amount=100, timestamp=ts)
        engine.contribute("q2", "fund", "u1", "financial", amount=100, timestamp=ts)
        assert engine.get_quest("q2").stage("fund").requirement.collected == 100

    def test_quota_failure_is_atomic(self):
        engine = QuestEngine(LocalQuestRepository(quota_bytes=3000))
        engine.create_quest(mixed_quest())
        with pytest.raises(QuotaExceededError):
            for i in range(50):
                engine.contribute("q2", "fund", f"user-{i}", "financial", amount=1)
        quest = engine.get_quest("q2")
        assert quest.stage("fund").requirement.collected == len(quest.contributions)

    def test_events_after_commit(self):
        engine = make_engine()
        engine.create_quest(mixed_quest())
        seen = record_events(engine)
        engine.contribute("q2", "fund", "u1", "financial", amount=500)
        names = [e["event"] for e in seen]
        assert names[0] == ev.CONTRIBUTION_RECORDED
        assert ev.PARTICIPANT_JOINED in names
        progress = next(e for e in seen if e["event"] == ev.PROGRESS_CHANGED)
        assert progress["overall_progress"] == 12
        assert progress["progress_color"] == "red"

    def test_failing_listener_does_not_undo_commit(self):
        engine = make_engine()
        engine.create_quest(mixed_quest())

        def broken(payload):
            raise RuntimeError("notifier down")

        engine.events.listen(ev.CONTRIBUTION_RECORDED, broken)
        engine.contribute("q2", "fund", "u1", "financial", amount=100)
        assert engine.get_quest("q2").stage("fund").requirement.collected == 100

    def test_save_failure_emits_nothing(self):
        engine = make_engine()
        engine.create_quest(mixed_quest())
        seen = record_events(engine)
        with patch.object(engine.repository, "save", side_effect=QuotaExceededError("full")):
            with pytest.raises(QuotaExceededError):
                engine.contribute("q2", "fund", "u1", "financial", amount=100)
        assert seen == []
        assert engine.get_quest("q2").stage("fund").requirement.collected == 0


class TestConcurrency:
    def test_quest_locks_released_after_use(self):
        engine = make_engine()
        engine.create_quest(mixed_quest())
        engine.contribute("q2", "fund", "u1", "financial", amount=100)
        with pytest.raises(OvercommitError):
            engine.contribute("q2", "fund", "u1", "financial", amount=5000)
        with engine._lock_for("q2"):
            assert list(engine._locks) == ["q2"]
        assert engine._locks == {}

    def test_no_overcommit_under_concurrency(self):
        engine = make_engine()
        engine.create_quest(single_stage_quest(collected=0, needed=1000))
        results = {"ok": 0, "rejected": 0}
        guard = threading.Lock()
        start = threading.Barrier(20)

        def donate(i):
            start.wait()
            try:
                engine.contribute("q1", "fund", f"user-{i}", "financial", amount=100)
                outcome = "ok"
            except (OvercommitError, InvalidStateError):
                outcome = "rejected"
            with guard:
                results[outcome] += 1

        threads = [threading.Thread(target=donate, args=(i,)) for i in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        quest = engine.get_quest("q1")
        assert quest.stages[0].requirement.collected == 1000
        assert results == {"ok": 10, "rejected": 10}
        assert len(quest.grants) == 10
        assert len({g.user_id for g in quest.grants}) == 10

    def test_concurrent_volunteers_fill_exactly(self):
        engine = make_engine()
        engine.create_quest(mixed_quest())
        for i in range(6):
            engine.join("q2", f"v{i}", "volunteer")
        errors = []

        def register(i):
            try:
                engine.contribute("q2", "hands", f"v{i}", "volunteer", action="register")
            except OvercommitError as e:
                errors.append(e)

        threads = [threading.Thread(target=register, args=(i,)) for i in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert engine.get_quest("q2").stage("hands").requirement.registered == 2
        assert len(errors) == 4


class TestLifecycle:
    def test_curator_policy_requires_confirmation(self):
        engine = make_engine(completion_policy="curator")
        engine.create_quest(single_stage_quest())
        engine.contribute("q1", "fund", "donor", "financial", amount=200)
        quest = engine.get_quest("q1")
        assert quest.status == "active"
        assert [g.user_id for g in quest.grants] == ["donor"]

        with pytest.raises(PermissionDeniedError):
            engine.complete_quest("q1", "donor")
        assert engine.complete_quest("q1", "curator").status == "completed"

    def test_confirmation_needs_100(self):
        engine = make_engine(completion_policy="curator")
        engine.create_quest(single_stage_quest())
        with pytest.raises(InvalidStateError):
            engine.complete_quest("q1", "curator")

    def test_archive_after_completion(self):
        engine = make_engine()
        engine.create_quest(single_stage_quest())
        with pytest.raises(InvalidStateError):
            engine.archive_quest("q1", "mod")
        engine.contribute("q1", "fund", "donor", "financial", amount=200)
        assert engine.archive_quest("q1", "mod").status == "archived"
        with pytest.raises(InvalidStateError):
            engine.contribute("q1", "fund", "donor", "financial", amount=1)
        with pytest.raises(InvalidStateError):
            engine.complete_quest("q1", "curator")

    def test_join_closed_quest(self):
        engine = make_engine()
        engine.create_quest(single_stage_quest())
        engine.contribute("q1", "fund", "donor", "financial", amount=200)
        with pytest.raises(InvalidStateError):
            engine.join("q1", "u9", "volunteer")


class TestCuratorStageUpdates:
    def test_curator_sets_progress_without_requirement(self):
        engine = make_engine()
        engine.create_quest(mixed_quest())
        quest = engine.update_stage("q2", "permit", "curator", progress=60, status="in_progress")
        assert quest.stage("permit").progress == 60
        assert quest.overall_progress == 15

    def test_requirement_progress_is_derived(self):
        engine = make_engine()
        engine.create_quest(mixed_quest())
        with pytest.raises(InvalidStateError):
            engine.update_stage("q2", "fund", "curator", progress=50)

    def test_only_curator_or_moderator(self):
        engine = make_engine()
        engine.create_quest(mixed_quest())
        with pytest.raises(PermissionDeniedError):
            engine.update_stage("q2", "permit", "stranger", progress=10)
        engine.update_stage("q2", "permit", "mod", progress=10)

    def test_curator_update_can_complete_quest(self):
        engine = make_engine()
        engine.create_quest(Quest(id="q4", title="t", curator_id="curator", stages=[
            Stage(id="a", title="a", requirement=FinancialRequirement(needed=10, collected=10)),
            Stage(id="b", title="b", progress=90),
        ]))
        engine.join("q4", "u1", "ambassador")
        quest = engine.update_stage("q4", "b", "curator", progress=100, status="completed")
        assert quest.status == "completed"
        assert [g.user_id for g in quest.grants] == ["u1"]

    def test_bad_progress(self):
        engine = make_engine()
        engine.create_quest(mixed_quest())
        with pytest.raises(ValidationError):
            engine.update_stage("q2", "permit", "curator", progress=101)


class TestShareAndProfile:
    def test_share_needs_ambassador(self):
        engine = make_engine()
        engine.create_quest(mixed_quest())
        with pytest.raises(PermissionDeniedError):
            engine.share("q2", "u1")
        engine.join("q2", "u1", "ambassador")
        card = engine.share("q2", "u1")
        assert card["shared_by"] == "u1"
        assert card["progress_color"] == "red"

    def test_grant_requires_participant_and_full_progress(self):
        engine = make_engine()
        engine.create_quest(single_stage_quest())
        with pytest.raises(InvalidStateError):
            engine.grant_achievement("q1", "u1")
        engine.contribute("q1", "fund", "donor", "financial", amount=200)
        with pytest.raises(NotFoundError):
            engine.grant_achievement("q1", "stranger")

    def test_achievements_and_experience_for_user(self):
        engine = make_engine()
        engine.create_quest(single_stage_quest())
        engine.create_quest(mixed_quest())
        engine.contribute("q1", "fund", "donor", "financial", amount=200)
        engine.contribute("q2", "bags", "donor", "financial", amount=3)
        assert [a.quest_id for a in engine.achievements_for_user("donor")] == ["q1"]
        profile = engine.experience_for_user("donor")
        assert profile["total_xp"] == 12
        assert profile["level"] == 1
        assert profile["level_title"] == "Newcomer"
