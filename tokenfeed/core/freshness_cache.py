import json
import sqlite3
import threading
import time
import weakref
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from tokenfeed.core.errors import CacheBackendError
from tokenfeed.core.models import AssetRecord, CacheEntry, CacheHit
from tokenfeed.utils.logger import get_logger, log_metric


class CacheBackend:
    """Storage for CacheEntry objects. Implementations may raise; FreshnessCache absorbs it."""

    def read(self, key: str) -> Optional[CacheEntry]:
        raise NotImplementedError

    def write(self, entry: CacheEntry) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError

    def keys(self) -> List[str]:
        raise NotImplementedError


class MemoryCacheBackend(CacheBackend):
    """Dict-backed tier holding at most ``max_entries`` keys; the oldest write is evicted first."""

    def __init__(self, max_entries: int = 256):
        if max_entries <= 0:
            raise ValueError("max_entries must be > 0")
        self.max_entries = max_entries
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()

    def read(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(key)

    def write(self, entry: CacheEntry) -> None:
        with self._lock:
            self._entries[entry.key] = entry
            while len(self._entries) > self.max_entries:
                oldest = min(self._entries.values(), key=lambda item: item.stored_at)
                del self._entries[oldest.key]

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries.keys())


class SQLiteCacheBackend(CacheBackend):
    """Durable tier: one row per cache key, payload stored as a JSON array."""

    def __init__(self, db_path: str = "data/cache/tokenfeed.db"):
        self.db_path = db_path
        self._connection = None
        self._lock = threading.Lock()

        # In-memory databases vanish with their connection, so keep one open
        if db_path == ":memory:":
            self._connection = sqlite3.connect(db_path, check_same_thread=False)
        else:
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._init_database()

    def _connect(self) -> sqlite3.Connection:
        if self._connection:
            return self._connection
        return sqlite3.connect(self.db_path, timeout=5.0)

    def _execute(self, sql: str, params: Sequence[Any] = ()) -> List[Tuple]:
        with self._lock:
            conn = self._connect()
            try:
                with conn:
                    return conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise CacheBackendError(f"SQLite cache error ({self.db_path}): {str(e)}") from e
            finally:
                if conn is not self._connection:
                    conn.close()

    def _init_database(self) -> None:
        self._execute("""
            CREATE TABLE IF NOT EXISTS cache_entries (
                key TEXT PRIMARY KEY,
                payload TEXT NOT NULL,
                stored_at REAL NOT NULL
            )
        """)

    def read(self, key: str) -> Optional[CacheEntry]:
        rows = self._execute("SELECT payload, stored_at FROM cache_entries WHERE key = ?", (key,))
        if not rows:
            return None
        payload_json, stored_at = rows[0]
        try:
            payload = tuple(AssetRecord.from_dict(item) for item in json.loads(payload_json))
        except (ValueError, KeyError, TypeError) as e:
            raise CacheBackendError(f"Corrupt cache row for {key}: {str(e)}") from e
        return CacheEntry(key=key, payload=payload, stored_at=float(stored_at))

    def write(self, entry: CacheEntry) -> None:
        self._execute(
            "INSERT OR REPLACE INTO cache_entries (key, payload, stored_at) VALUES (?, ?, ?)",
            (entry.key, json.dumps(entry.to_json_payload()), entry.stored_at),
        )

    def delete(self, key: str) -> None:
        self._execute("DELETE FROM cache_entries WHERE key = ?", (key,))

    def clear(self) -> None:
        self._execute("DELETE FROM cache_entries")

    def keys(self) -> List[str]:
        return [row[0] for row in self._execute("SELECT key FROM cache_entries ORDER BY key")]


class _KeyLock:
    """A per-key mutex. Held weakly by FreshnessCache, so idle keys do not pin a lock."""

    __slots__ = ("_lock", "__weakref__")

    def __init__(self):
        self._lock = threading.Lock()

    def __enter__(self):
        self._lock.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self._lock.release()
        return False


@dataclass
class CacheTier:
    name: str
    backend: CacheBackend
    ttl: float


class FreshnessCache:
    """Tiered cache of asset snapshots with TTL-based freshness.

    Reads walk the tiers in order (ephemeral first); writes go to every tier.
    ``get`` only serves an entry within its tier's TTL and reports it fresh
    when it is within ``fresh_ttl`` (the first tier's TTL by default).
    ``get_stale_allowing_expired`` ignores age and is meant for the last
    resort path once every live fetch has failed. Backend failures are
    logged and treated as a miss; they never reach the caller.
    """

    def __init__(
        self,
        tiers: Sequence[CacheTier],
        fresh_ttl: Optional[float] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        if not tiers:
            raise ValueError("FreshnessCache needs at least one tier")
        self.logger = get_logger("FreshnessCache")
        self.tiers = list(tiers)
        self.fresh_ttl = fresh_ttl if fresh_ttl is not None else self.tiers[0].ttl
        self._clock = clock or time.time
        self._key_locks: "weakref.WeakValueDictionary[str, _KeyLock]" = weakref.WeakValueDictionary()
        self._key_locks_guard = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Dict[str, Any], **kwargs) -> "FreshnessCache":
        cache_config = settings.get("cache", {})
        tiers = [
            CacheTier(
                "ephemeral",
                MemoryCacheBackend(cache_config.get("ephemeral_max_entries", 256)),
                cache_config.get("ephemeral_ttl_seconds", 300),
            ),
        ]
        if cache_config.get("durable_enabled", True):
            try:
                backend = SQLiteCacheBackend(cache_config.get("durable_path", "data/cache/tokenfeed.db"))
                tiers.append(CacheTier("durable", backend, cache_config.get("durable_ttl_seconds", 7200)))
            except (CacheBackendError, OSError) as e:
                get_logger("FreshnessCache").warning(
                    f"Durable cache tier unavailable, continuing with memory only: {str(e)}"
                )
        return cls(tiers, **kwargs)

    def _lock_for(self, key: str) -> _KeyLock:
        with self._key_locks_guard:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = _KeyLock()
                self._key_locks[key] = lock
            return lock

    def _read(self, tier: CacheTier, key: str) -> Optional[CacheEntry]:
        try:
            return tier.backend.read(key)
        except Exception as e:
            self.logger.warning(f"Cache tier {tier.name} read failed for {key}: {str(e)}")
            log_metric("cache_backend_error", 1, {"tier": tier.name, "op": "read"})
            return None

    def _write(self, tier: CacheTier, entry: CacheEntry) -> bool:
        try:
            tier.backend.write(entry)
            return True
        except Exception as e:
            self.logger.warning(f"Cache tier {tier.name} write failed for {entry.key}: {str(e)}")
            log_metric("cache_backend_error", 1, {"tier": tier.name, "op": "write"})
            return False

    def _newest(self, key: str) -> Optional[CacheEntry]:
        newest = None
        for tier in self.tiers:
            entry = self._read(tier, key)
            if entry is not None and (newest is None or entry.stored_at > newest.stored_at):
                newest = entry
        return newest

    def get(self, key: str) -> Optional[CacheHit]:
        now = self._clock()
        with self._lock_for(key):
            for tier in self.tiers:
                entry = self._read(tier, key)
                if entry is None or entry.is_expired(tier.ttl, now):
                    continue
                is_fresh = entry.age(now) <= self.fresh_ttl
                self.logger.debug(f"Cache hit for {key} in {tier.name} (fresh={is_fresh})")
                log_metric("cache_hit", 1, {"key": key, "tier": tier.name, "fresh": is_fresh})
                return CacheHit(payload=entry.payload, is_fresh=is_fresh, stored_at=entry.stored_at, tier=tier.name)

        log_metric("cache_miss", 1, {"key": key})
        return None

    def peek(self, key: str) -> Optional[CacheEntry]:
        with self._lock_for(key):
            return self._newest(key)

    def get_stale_allowing_expired(self, key: str) -> Optional[Tuple[AssetRecord, ...]]:
        entry = self.peek(key)
        if entry is None:
            return None
        self.logger.warning(
            f"Serving last-resort cache entry for {key} (age {entry.age(self._clock()):.0f}s)"
        )
        log_metric("cache_last_resort", 1, {"key": key})
        return entry.payload

    def put(self, key: str, payload: Sequence[AssetRecord]) -> CacheEntry:
        entry = CacheEntry(key=key, payload=tuple(payload), stored_at=self._clock())
        with self._lock_for(key):
            written = [tier.name for tier in self.tiers if self._write(tier, entry)]
        self.logger.debug(f"Cache put {key} ({len(entry.payload)} records) -> {written}")
        log_metric("cache_set", 1, {"key": key, "records": len(entry.payload), "tiers": len(written)})
        return entry

    def compare_and_put(
        self, key: str, payload: Sequence[AssetRecord], expected_stored_at: Optional[float]
    ) -> bool:
        """Write only if the newest stored_at still equals ``expected_stored_at``.

        ``None`` means the key is expected to be absent. Returns False when a
        concurrent writer got there first, leaving its newer entry in place.
        """
        with self._lock_for(key):
            current = self._newest(key)
            current_stored_at = current.stored_at if current is not None else None
            if current_stored_at != expected_stored_at:
                self.logger.info(f"Cache write for {key} skipped, a newer entry was stored concurrently")
                log_metric("cache_cas_conflict", 1, {"key": key})
                return False

            entry = CacheEntry(key=key, payload=tuple(payload), stored_at=self._clock())
            for tier in self.tiers:
                self._write(tier, entry)

        log_metric("cache_set", 1, {"key": key, "records": len(entry.payload)})
        return True

    def invalidate(self, key: str) -> None:
        with self._lock_for(key):
            for tier in self.tiers:
                try:
                    tier.backend.delete(key)
                except Exception as e:
                    self.logger.warning(f"Cache tier {tier.name} delete failed for {key}: {str(e)}")

    def clear(self) -> None:
        for tier in self.tiers:
            try:
                tier.backend.clear()
            except Exception as e:
                self.logger.warning(f"Cache tier {tier.name} clear failed: {str(e)}")
        self.logger.info("Cache cleared")
        log_metric("cache_cleared", 1, {})

    def stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {"fresh_ttl": self.fresh_ttl, "tiers": []}
        for tier in self.tiers:
            try:
                keys = tier.backend.keys()
            except Exception as e:
                self.logger.warning(f"Cache tier {tier.name} stats failed: {str(e)}")
                keys = []
            stats["tiers"].append({"name": tier.name, "ttl": tier.ttl, "keys": keys})
        return stats
