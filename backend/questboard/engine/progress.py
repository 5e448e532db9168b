"""
Progress aggregation — pure functions, no DB access.
"""
from .stages import Quest, Stage

# Lower bound of each band; a value belongs to the highest band it reaches.
COLOR_BANDS: list[tuple[int, str]] = [
    (100, "victory"),
    (76, "green"),
    (51, "yellow"),
    (26, "orange"),
    (0, "red"),
]


def stage_progress(stage: Stage) -> int:
    """
    floor(100 * collected / needed) for stages bound to a requirement;
    the curator-set value otherwise.
    """
    req = stage.requirement
    if req is None:
        return stage.progress
    # Counters are ints or Decimals and never negative, so // is an exact floor.
    value = int(100 * req.count // req.needed)
    return max(0, min(100, value))


def overall_progress(quest: Quest) -> int:
    """Floor of the mean stage progress; 0 for a quest without stages."""
    if not quest.stages:
        return 0
    total = sum(s.progress for s in quest.stages)
    return max(0, min(100, total // len(quest.stages)))


def progress_color(overall: int) -> str:
    overall = max(0, min(100, overall))
    for threshold, color in COLOR_BANDS:
        if overall >= threshold:
            return color
    return "red"


def recompute(quest: Quest) -> tuple[int, int]:
    """
    Refresh stage progress, overall progress and colour in place.
    Returns (previous_overall, new_overall).
    """
    previous = quest.overall_progress
    for stage in quest.stages:
        stage.progress = stage_progress(stage)
    quest.overall_progress = overall_progress(quest)
    quest.progress_color = progress_color(quest.overall_progress)
    return previous, quest.overall_progress


def find_stage(quest: Quest, stage_id: str) -> Stage | None:
    return quest.stage(stage_id)


def active_stages(quest: Quest) -> list[Stage]:
    return [s for s in quest.stages if s.status == "in_progress"]


def completed_stages(quest: Quest) -> list[Stage]:
    return [s for s in quest.stages if s.status == "completed"]
