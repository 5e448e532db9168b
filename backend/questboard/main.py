"""
Questboard — FastAPI backend for the quest progress & contribution engine
"""
import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Header, HTTPException, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from .config import get_settings
from .engine.errors import QuestEngineError
from .engine.events import ACHIEVEMENT_UNLOCKED, QUEST_STATUS_CHANGED
from .engine.stages import Quest
from .models import ContributionCreate, JoinRequest, QuestCreate, StageUpdate
from .service import QuestEngine, get_engine

logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

ERROR_STATUS: dict[str, int] = {
    "validation_error": 422,
    "overcommit": 409,
    "invalid_state": 409,
    "concurrent_update": 409,
    "not_found": 404,
    "permission_denied": 403,
    "quota_exceeded": 507,
}


def _notify_achievement(payload: dict) -> None:
    grant = payload["achievement"]
    logger.info("Achievement unlocked: %s for %s... (quest %s)",
                grant["title"], grant["user_id"][:8], payload["quest_id"])


def _notify_status(payload: dict) -> None:
    logger.info("Quest %s: %s -> %s", payload["quest_id"], payload["previous"], payload["status"])


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = get_engine()
    unsubscribers = [
        engine.events.listen(ACHIEVEMENT_UNLOCKED, _notify_achievement),
        engine.events.listen(QUEST_STATUS_CHANGED, _notify_status),
    ]
    yield
    for unsubscribe in unsubscribers:
        unsubscribe()


limiter = Limiter(key_func=get_remote_address)
app = FastAPI(title="Questboard API", lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(get_settings().allowed_origins),
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["Authorization", "Content-Type"],
)


@app.exception_handler(QuestEngineError)
async def engine_error_handler(request: Request, exc: QuestEngineError):
    return JSONResponse(
        status_code=ERROR_STATUS.get(exc.code, 400),
        content={"detail": exc.message, "code": exc.code},
    )


@app.get("/health")
def health():
    try:
        get_engine().repository.ping()
        return {"status": "ok", "db": "ok"}
    except Exception as e:
        logger.error("Health check storage failure: %s", e)
        raise HTTPException(status_code=503, detail="Storage unavailable")


# ── Auth ──────────────────────────────────────────────────────────────────────

def get_user_id(authorization: str = Header(...)) -> str:
    if not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing Bearer token")
    user_id = authorization.removeprefix("Bearer ").strip()
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing Bearer token")
    return user_id


def engine_dep() -> QuestEngine:
    return get_engine()


# ── Quests ────────────────────────────────────────────────────────────────────

@app.post("/api/quests", status_code=201)
@limiter.limit("10/minute")
def create_quest(request: Request, body: QuestCreate,
                 user_id: str = Depends(get_user_id), engine: QuestEngine = Depends(engine_dep)):
    quest = engine.create_quest(Quest.from_dict(body.to_record(curator_id=user_id)))
    return _quest_view(quest)


@app.get("/api/quests/{quest_id}")
def get_quest(quest_id: str, engine: QuestEngine = Depends(engine_dep)):
    return _quest_view(engine.get_quest(quest_id))


@app.post("/api/quests/{quest_id}/participants")
@limiter.limit("10/minute")
def join_quest(request: Request, quest_id: str, body: JoinRequest,
               user_id: str = Depends(get_user_id), engine: QuestEngine = Depends(engine_dep)):
    participation = engine.join(quest_id, user_id, body.role)
    return {"status": "joined", "participation": participation.to_dict()}


@app.post("/api/quests/{quest_id}/contributions", status_code=201)
@limiter.limit("30/minute")
def create_contribution(request: Request, quest_id: str, body: ContributionCreate,
                        user_id: str = Depends(get_user_id), engine: QuestEngine = Depends(engine_dep)):
    contribution = engine.contribute(
        quest_id, body.stage_id, user_id, body.role,
        amount=body.amount, action=body.action, contribution_id=body.contribution_id,
    )
    quest = engine.get_quest(quest_id)
    return {
        "status": "ok",
        "contribution": contribution.to_dict(),
        "quest": _quest_summary(quest),
    }


@app.post("/api/quests/{quest_id}/share")
def share_quest(quest_id: str, user_id: str = Depends(get_user_id), engine: QuestEngine = Depends(engine_dep)):
    return engine.share(quest_id, user_id)


# ── Curator / moderation ──────────────────────────────────────────────────────

@app.patch("/api/quests/{quest_id}/stages/{stage_id}")
def update_stage(quest_id: str, stage_id: str, body: StageUpdate,
                 user_id: str = Depends(get_user_id), engine: QuestEngine = Depends(engine_dep)):
    quest = engine.update_stage(quest_id, stage_id, user_id, status=body.status, progress=body.progress)
    return _quest_view(quest)


@app.post("/api/quests/{quest_id}/complete")
def complete_quest(quest_id: str, user_id: str = Depends(get_user_id), engine: QuestEngine = Depends(engine_dep)):
    return _quest_summary(engine.complete_quest(quest_id, user_id))


@app.post("/api/quests/{quest_id}/archive")
def archive_quest(quest_id: str, user_id: str = Depends(get_user_id), engine: QuestEngine = Depends(engine_dep)):
    return _quest_summary(engine.archive_quest(quest_id, user_id))


# ── Users ─────────────────────────────────────────────────────────────────────

@app.get("/api/users/{profile_user_id}/achievements")
def get_achievements(profile_user_id: str, engine: QuestEngine = Depends(engine_dep)):
    achievements = engine.achievements_for_user(profile_user_id)
    return {"achievements": [a.to_dict() for a in achievements], "unlocked_count": len(achievements)}


@app.get("/api/users/{profile_user_id}/experience")
def get_experience(profile_user_id: str, engine: QuestEngine = Depends(engine_dep)):
    return engine.experience_for_user(profile_user_id)


# ── Helpers ───────────────────────────────────────────────────────────────────

def _quest_summary(quest: Quest) -> dict[str, Any]:
    return {
        "id": quest.id,
        "status": quest.status,
        "overall_progress": quest.overall_progress,
        "progress_color": quest.progress_color,
        "version": quest.version,
    }


def _quest_view(quest: Quest) -> dict[str, Any]:
    return {
        **_quest_summary(quest),
        "title": quest.title,
        "curator_id": quest.curator_id,
        "achievement": quest.achievement,
        "stages": [s.to_dict() for s in quest.stages],
        "participants": [p.to_dict() for p in quest.participations],
        "contributions_count": len(quest.contributions),
        "created_at": quest.created_at,
        "updated_at": quest.updated_at,
    }
