"""
Recompute derived progress fields (stage progress, overall progress, colour)
for stored quests and report ledger drift.

Counters are never rewritten: the ledger sum for a stage must not exceed its
counter (authored quests may start with counters above zero). Safe to run
multiple times (idempotent).

Usage:
    cd backend
    SUPABASE_URL=... SUPABASE_SERVICE_KEY=... python scripts/recompute_progress.py [quest_id ...]

Or with a .env file:
    python scripts/recompute_progress.py --dry-run
"""
import argparse
import sys
from collections import defaultdict
from decimal import Decimal

from dotenv import load_dotenv

from questboard.db import get_repository
from questboard.engine.progress import recompute
from questboard.engine.stages import Quest


def ledger_totals(quest: Quest) -> dict[str, Decimal]:
    totals: dict[str, Decimal] = defaultdict(Decimal)
    for c in quest.contributions:
        stage = quest.stage(c.stage_id)
        if stage is None or stage.requirement is None:
            continue
        totals[c.stage_id] += 1 if stage.requirement.kind == "volunteers" else (c.amount or 0)
    return totals


def find_drift(quest: Quest) -> list[str]:
    problems = []
    totals = ledger_totals(quest)
    for stage in quest.stages:
        req = stage.requirement
        if req is None:
            continue
        if totals.get(stage.id, 0) > req.count:
            problems.append(f"stage {stage.id}: ledger {totals[stage.id]} > counter {req.count}")
        if req.count > req.needed:
            problems.append(f"stage {stage.id}: counter {req.count} > needed {req.needed}")
    return problems


def main() -> int:
    load_dotenv()
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[1])
    parser.add_argument("quest_ids", nargs="*", help="quests to process (default: all)")
    parser.add_argument("--dry-run", action="store_true", help="report only, do not save")
    args = parser.parse_args()

    repo = get_repository()
    quests = repo.list_quests()
    if args.quest_ids:
        wanted = set(args.quest_ids)
        quests = [q for q in quests if q.id in wanted]
    print(f"Processing {len(quests)} quests")

    drifted = 0
    for quest in quests:
        before = (quest.overall_progress, quest.progress_color, [s.progress for s in quest.stages])
        recompute(quest)
        after = (quest.overall_progress, quest.progress_color, [s.progress for s in quest.stages])

        problems = find_drift(quest)
        if problems:
            drifted += 1
            for p in problems:
                print(f"  DRIFT {quest.id}: {p}")

        if before != after:
            print(f"  {quest.id}: {before[0]}% {before[1]} -> {after[0]}% {after[1]}")
            if not args.dry_run:
                repo.save(quest)

    print(f"Done. {drifted} quests with ledger drift.")
    return 1 if drifted else 0


if __name__ == "__main__":
    sys.exit(main())
