import os
from dataclasses import dataclass
from functools import lru_cache

DEFAULT_LOCAL_QUOTA_BYTES = 4 * 1024 * 1024
DEFAULT_ALLOWED_ORIGINS = "http://localhost:3000,http://localhost:5173"


def _flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _csv(raw: str) -> tuple[str, ...]:
    return tuple(p.strip() for p in raw.split(",") if p.strip())


@dataclass(frozen=True)
class Settings:
    storage: str                 # 'supabase' | 'local'
    supabase_url: str
    supabase_key: str
    local_path: str | None
    local_quota_bytes: int
    completion_policy: str       # 'auto' | 'curator'
    stage_auto_complete: bool
    moderators: tuple[str, ...]
    allowed_origins: tuple[str, ...]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    supabase_url = os.environ.get("SUPABASE_URL", "")
    storage = os.environ.get("QUESTBOARD_STORAGE") or ("supabase" if supabase_url else "local")
    return Settings(
        storage=storage.strip().lower(),
        supabase_url=supabase_url,
        supabase_key=os.environ.get("SUPABASE_SERVICE_KEY", ""),
        local_path=os.environ.get("QUESTBOARD_LOCAL_PATH") or None,
        local_quota_bytes=int(os.environ.get("QUESTBOARD_LOCAL_QUOTA_BYTES", DEFAULT_LOCAL_QUOTA_BYTES)),
        completion_policy=(os.environ.get("QUESTBOARD_COMPLETION_POLICY") or "auto").strip().lower(),
        stage_auto_complete=_flag("QUESTBOARD_STAGE_AUTO_COMPLETE", True),
        moderators=_csv(os.environ.get("QUESTBOARD_MODERATORS", "")),
        allowed_origins=_csv(os.environ.get("QUESTBOARD_ALLOWED_ORIGINS", DEFAULT_ALLOWED_ORIGINS)),
    )
