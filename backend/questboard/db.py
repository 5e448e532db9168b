"""
Persistence port for quest records and its two implementations:
Supabase (remote API) and a local JSON cache with an explicit size quota.

Each quest is one JSON document. Writes are compare-and-swap on ``version``
so a stale copy can never overwrite a newer commit.
"""
import copy
import json
import logging
import os
from functools import lru_cache
from threading import Lock
from typing import Protocol

from supabase import create_client, Client

from .config import get_settings
from .engine.errors import ConcurrentUpdateError, QuotaExceededError
from .engine.stages import Quest

logger = logging.getLogger(__name__)


class QuestRepository(Protocol):

    def get(self, quest_id: str) -> Quest | None:
        """Return a private copy of the stored quest, or None."""
        ...

    def save(self, quest: Quest) -> None:
        """Persist quest if its version is still current; bumps quest.version."""
        ...

    def list_quests(self) -> list[Quest]:
        ...

    def ping(self) -> None:
        """Raise if storage is unreachable."""
        ...


def check_quota(payload: str, limit: int | None) -> int:
    """Size check run before every commit; oversized payloads are rejected, never truncated."""
    size = len(payload.encode("utf-8"))
    if limit is not None and size > limit:
        raise QuotaExceededError(f"Record size {size} bytes exceeds storage budget of {limit} bytes")
    return size


def _is_duplicate_error(e: Exception) -> bool:
    err_str = str(e).lower()
    return "duplicate" in err_str or "unique" in err_str or "23505" in err_str


@lru_cache(maxsize=1)
def get_client() -> Client:
    settings = get_settings()
    return create_client(settings.supabase_url, settings.supabase_key)


class SupabaseQuestRepository:
    """Rows of table ``quests``: id text primary key, version int, data jsonb."""

    table = "quests"

    def __init__(self, client: Client, max_record_bytes: int | None = None):
        self.client = client
        self.max_record_bytes = max_record_bytes

    def get(self, quest_id: str) -> Quest | None:
        res = self.client.table(self.table).select("*").eq("id", quest_id).execute()
        if not res.data:
            return None
        row = res.data[0]
        quest = Quest.from_dict(row["data"])
        quest.version = row.get("version", quest.version)
        return quest

    def save(self, quest: Quest) -> None:
        new_version = quest.version + 1
        record = quest.to_dict()
        record["version"] = new_version
        check_quota(json.dumps(record, ensure_ascii=False), self.max_record_bytes)

        if quest.version == 0:
            try:
                self.client.table(self.table).insert(
                    {"id": quest.id, "version": new_version, "data": record}
                ).execute()
            except Exception as e:
                if _is_duplicate_error(e):
                    raise ConcurrentUpdateError(f"Quest {quest.id} already exists") from e
                raise
        else:
            res = (
                self.client.table(self.table)
                .update({"version": new_version, "data": record})
                .eq("id", quest.id)
                .eq("version", quest.version)
                .execute()
            )
            if not res.data:
                raise ConcurrentUpdateError(
                    f"Quest {quest.id} changed since version {quest.version}; resubmit the request"
                )
        quest.version = new_version

    def list_quests(self) -> list[Quest]:
        res = self.client.table(self.table).select("*").order("id").execute()
        quests = []
        for row in res.data or []:
            quest = Quest.from_dict(row["data"])
            quest.version = row.get("version", quest.version)
            quests.append(quest)
        return quests

    def ping(self) -> None:
        self.client.table(self.table).select("id").limit(1).execute()


class LocalQuestRepository:
    """
    Client-side fallback: all quests in one JSON document, kept in memory and
    optionally mirrored to ``path``. The whole document must fit quota_bytes.
    """

    def __init__(self, path: str | None = None, quota_bytes: int | None = None):
        self.path = path
        self.quota_bytes = quota_bytes
        self._lock = Lock()
        self._records: dict[str, dict] = self._load()

    def _load(self) -> dict[str, dict]:
        if not self.path or not os.path.exists(self.path):
            return {}
        with open(self.path, encoding="utf-8") as f:
            data = json.load(f)
        logger.info("Loaded %d quests from %s", len(data), self.path)
        return data

    def _write(self, payload: str) -> None:
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            f.write(payload)
        os.replace(tmp_path, self.path)

    def get(self, quest_id: str) -> Quest | None:
        with self._lock:
            record = self._records.get(quest_id)
            if record is None:
                return None
            return Quest.from_dict(copy.deepcopy(record))

    def save(self, quest: Quest) -> None:
        with self._lock:
            stored = self._records.get(quest.id)
            stored_version = stored["version"] if stored else 0
            if stored_version != quest.version:
                raise ConcurrentUpdateError(
                    f"Quest {quest.id} changed since version {quest.version}; resubmit the request"
                )
            record = quest.to_dict()
            record["version"] = quest.version + 1
            candidate = {**self._records, quest.id: record}
            payload = json.dumps(candidate, ensure_ascii=False)
            check_quota(payload, self.quota_bytes)
            if self.path:
                self._write(payload)
            self._records = candidate
            quest.version = record["version"]

    def list_quests(self) -> list[Quest]:
        with self._lock:
            records = copy.deepcopy(list(self._records.values()))
        return [Quest.from_dict(r) for r in sorted(records, key=lambda r: r["id"])]

    def ping(self) -> None:
        if self.path:
            directory = os.path.dirname(os.path.abspath(self.path))
            if not os.access(directory, os.W_OK):
                raise OSError(f"{directory} is not writable")


@lru_cache(maxsize=1)
def get_repository() -> QuestRepository:
    settings = get_settings()
    if settings.storage == "supabase":
        return SupabaseQuestRepository(get_client())
    if settings.storage == "local":
        return LocalQuestRepository(settings.local_path, settings.local_quota_bytes)
    raise ValueError(f"Unknown QUESTBOARD_STORAGE: {settings.storage!r}")
