"""
History Store - bounded, persisted list of past diagnoses (newest first)

The whole collection is kept in memory and written back as one JSON record
on every change. Persistence is best-effort: read failures reset the history
to empty, write failures are logged and the in-memory state is kept.

Backends:
- file:     JSON file on local disk (default)
- redis:    standard Redis URL or Upstash REST API
- supabase: one row per record key in a key/value table
- memory:   process-local dict (tests, serverless previews)
"""
import os
import json
import logging
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

import redis
from pydantic import TypeAdapter, ValidationError
from supabase import create_client
from upstash_redis import Redis

from cropdoc.config import (
    HISTORY_BACKEND,
    HISTORY_FILE,
    HISTORY_RECORD_KEY,
    HISTORY_TABLE,
    MAX_HISTORY_ENTRIES,
    REDIS_URL,
    SUPABASE_KEY,
    SUPABASE_URL,
    UPSTASH_REDIS_REST_TOKEN,
    UPSTASH_REDIS_REST_URL,
)
from cropdoc.errors import PersistenceError, UnknownHistoryEntryError
from cropdoc.models import HistoryEntry

logger = logging.getLogger(__name__)

_entries_adapter = TypeAdapter(List[HistoryEntry])


class RecordBackend(Protocol):
    """Stores one serialized record per key"""

    name: str

    def read(self, key: str) -> Optional[str]: ...

    def write(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


# ============================================================================
# Backends
# ============================================================================

class MemoryRecordBackend:
    name = "memory"

    def __init__(self):
        self.records: Dict[str, str] = {}

    def read(self, key: str) -> Optional[str]:
        return self.records.get(key)

    def write(self, key: str, value: str) -> None:
        self.records[key] = value

    def remove(self, key: str) -> None:
        self.records.pop(key, None)


class FileRecordBackend:
    """One JSON file per record key inside a directory"""

    name = "file"

    def __init__(self, path: str = HISTORY_FILE):
        self.directory = os.path.dirname(path) or "."
        self.default_name = os.path.basename(path)

    def _path(self, key: str) -> str:
        if key == HISTORY_RECORD_KEY:
            return os.path.join(self.directory, self.default_name)
        safe_key = "".join(c if c.isalnum() or c in "-_" else "_" for c in key)
        return os.path.join(self.directory, f"{safe_key}.json")

    def read(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return f.read()
        except (OSError, UnicodeDecodeError) as e:
            raise PersistenceError(f"Cannot read {path}: {e}") from e

    def write(self, key: str, value: str) -> None:
        path = self._path(key)
        tmp_path = f"{path}.tmp"
        try:
            os.makedirs(self.directory, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(value)
            os.replace(tmp_path, path)
        except OSError as e:
            raise PersistenceError(f"Cannot write {path}: {e}") from e

    def remove(self, key: str) -> None:
        path = self._path(key)
        try:
            if os.path.exists(path):
                os.remove(path)
        except OSError as e:
            raise PersistenceError(f"Cannot remove {path}: {e}") from e


class RedisRecordBackend:
    """Redis without TTL; accepts a redis-py or upstash-redis client"""

    name = "redis"

    def __init__(self, client):
        self.client = client

    @classmethod
    def from_env(cls) -> "RedisRecordBackend":
        # Option 1: Upstash REST API (recommended for serverless)
        if UPSTASH_REDIS_REST_URL and UPSTASH_REDIS_REST_TOKEN:
            logger.info("✓ History backend: Redis (Upstash REST API)")
            return cls(Redis(url=UPSTASH_REDIS_REST_URL, token=UPSTASH_REDIS_REST_TOKEN))

        # Option 2: Standard Redis URL
        if REDIS_URL:
            logger.info("✓ History backend: Redis (Standard Redis)")
            return cls(redis.from_url(
                REDIS_URL,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5
            ))

        raise PersistenceError("HISTORY_BACKEND=redis but neither REDIS_URL nor Upstash credentials are set")

    def read(self, key: str) -> Optional[str]:
        try:
            value = self.client.get(key)
        except Exception as e:
            raise PersistenceError(f"Redis GET error [{key}]: {e}") from e
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return value

    def write(self, key: str, value: str) -> None:
        try:
            self.client.set(key, value)
        except Exception as e:
            raise PersistenceError(f"Redis SET error [{key}]: {e}") from e

    def remove(self, key: str) -> None:
        try:
            self.client.delete(key)
        except Exception as e:
            raise PersistenceError(f"Redis DELETE error [{key}]: {e}") from e


class SupabaseRecordBackend:
    """Key/value rows in a Supabase table: (key text primary key, value text, updated_at)"""

    name = "supabase"

    def __init__(self, client, table: str = HISTORY_TABLE):
        self.client = client
        self.table = table

    @classmethod
    def from_env(cls) -> "SupabaseRecordBackend":
        if not (SUPABASE_URL and SUPABASE_KEY):
            raise PersistenceError("HISTORY_BACKEND=supabase but SUPABASE_URL/SUPABASE_KEY are not set")
        logger.info("✓ History backend: Supabase")
        return cls(create_client(SUPABASE_URL, SUPABASE_KEY))

    def read(self, key: str) -> Optional[str]:
        try:
            result = self.client.table(self.table)\
                .select('value')\
                .eq('key', key)\
                .execute()
        except Exception as e:
            raise PersistenceError(f"Supabase read error [{key}]: {e}") from e
        if not result.data:
            return None
        return result.data[0]['value']

    def write(self, key: str, value: str) -> None:
        try:
            self.client.table(self.table).upsert({
                'key': key,
                'value': value,
                'updated_at': datetime.now(timezone.utc).isoformat()
            }).execute()
        except Exception as e:
            raise PersistenceError(f"Supabase write error [{key}]: {e}") from e

    def remove(self, key: str) -> None:
        try:
            self.client.table(self.table).delete().eq('key', key).execute()
        except Exception as e:
            raise PersistenceError(f"Supabase delete error [{key}]: {e}") from e


def create_backend(kind: str = HISTORY_BACKEND) -> RecordBackend:
    """Build the configured backend, falling back to memory when it cannot be reached"""
    kind = (kind or "file").lower()
    try:
        if kind == "memory":
            return MemoryRecordBackend()
        if kind == "file":
            return FileRecordBackend()
        if kind == "redis":
            backend = RedisRecordBackend.from_env()
            backend.client.ping()
            return backend
        if kind == "supabase":
            return SupabaseRecordBackend.from_env()
    except Exception as e:
        logger.error(f"History backend '{kind}' unavailable, keeping history in memory: {e}")
        return MemoryRecordBackend()

    logger.warning(f"⚠️ Unknown HISTORY_BACKEND '{kind}' - using in-memory history")
    return MemoryRecordBackend()


# ============================================================================
# Store
# ============================================================================

class HistoryStore:
    """Owner of the HistoryCollection.

    Callers only ever receive copies of the collection; append/clear are
    serialised so concurrent sessions sharing a store never interleave.
    """

    def __init__(
        self,
        backend: RecordBackend,
        key: str = HISTORY_RECORD_KEY,
        max_entries: int = MAX_HISTORY_ENTRIES,
    ):
        self.backend = backend
        self.key = key
        self.max_entries = max_entries
        self._entries: List[HistoryEntry] = []
        self._lock = threading.Lock()
        self._loaded = False

    @property
    def entries(self) -> List[HistoryEntry]:
        if not self._loaded:
            self.load()
        return list(self._entries)

    def __len__(self) -> int:
        return len(self.entries)

    def load(self) -> List[HistoryEntry]:
        """Read the persisted record; missing or malformed data yields an empty history"""
        with self._lock:
            self._entries = self._read_record()
            self._loaded = True
            return list(self._entries)

    def _read_record(self) -> List[HistoryEntry]:
        try:
            raw = self.backend.read(self.key)
        except PersistenceError as e:
            logger.error(f"Failed to load history '{self.key}': {e}")
            return []
        except Exception as e:
            logger.error(f"Unexpected error loading history '{self.key}' from {self.backend.name}: {e}", exc_info=True)
            return []

        if not raw:
            return []

        try:
            entries = _entries_adapter.validate_json(raw)
        except (ValidationError, ValueError) as e:
            logger.error(f"Failed to parse history '{self.key}', resetting to empty: {e}")
            return []

        if len(entries) > self.max_entries:
            logger.warning(f"History '{self.key}' had {len(entries)} entries, keeping newest {self.max_entries}")
            entries = entries[:self.max_entries]

        logger.info(f"✓ Loaded {len(entries)} history entries from {self.backend.name}")
        return entries

    def append(self, entry: HistoryEntry) -> List[HistoryEntry]:
        """Prepend an entry, drop anything beyond the cap, persist the snapshot"""
        with self._lock:
            if not self._loaded:
                self._entries = self._read_record()
                self._loaded = True
            self._entries = [entry, *self._entries][:self.max_entries]
            snapshot = list(self._entries)
            self._persist(snapshot)
        logger.info(f"✓ History append: {entry.result.crop} / {entry.result.disease} ({len(snapshot)} entries)")
        return snapshot

    def clear(self) -> List[HistoryEntry]:
        with self._lock:
            self._entries = []
            self._loaded = True
            try:
                self.backend.remove(self.key)
            except PersistenceError as e:
                logger.error(f"Failed to remove persisted history '{self.key}': {e}")
        logger.info(f"✓ Cleared history '{self.key}'")
        return []

    def get(self, entry_id: str) -> HistoryEntry:
        for entry in self.entries:
            if entry.id == entry_id:
                return entry
        raise UnknownHistoryEntryError(f"No history entry with id {entry_id}")

    def _persist(self, snapshot: List[HistoryEntry]):
        try:
            payload = json.dumps(
                [e.model_dump(mode="json", by_alias=True) for e in snapshot],
                ensure_ascii=False,
            )
            self.backend.write(self.key, payload)
        except PersistenceError as e:
            logger.error(f"Failed to persist history '{self.key}' (kept in memory): {e}")
