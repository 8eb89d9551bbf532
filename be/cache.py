"""Key/value stores and the content-addressed match result cache.

The cache only ever memoizes; every failure (timeout, unreachable store,
undecodable payload) is a miss or a dropped write, never an error for the
caller.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from typing import TYPE_CHECKING, Any, Callable, Mapping, Protocol

from pydantic import ValidationError
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.exc import SQLAlchemyError

from .config import CacheBackend, CacheSettings, DatabaseSettings
from .models import CacheEntry

if TYPE_CHECKING:
    from .pipelines.normalization import IntakeAnswers, MatchingProfile

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


class KeyValueStore(Protocol):
    """TTL key/value store."""

    async def get(self, key: str) -> bytes | None:
        ...

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> bool:
        ...


class MemoryKeyValueStore:
    """Process-local store.

    Expired entries are dropped when read and swept on writes, at most once
    per ``sweep_interval_seconds``. ``max_entries`` bounds the store; the
    entries closest to expiry go first.
    """

    def __init__(self, clock: Clock = time.time, *, max_entries: int = 10_000, sweep_interval_seconds: float = 1.0):
        self._clock = clock
        self._entries: dict[str, tuple[bytes, float]] = {}
        self.max_entries = max_entries
        self.sweep_interval_seconds = sweep_interval_seconds
        self._next_sweep = clock() + sweep_interval_seconds

    def purge_expired(self) -> int:
        """Drop every expired entry; returns how many were removed."""
        now = self._clock()
        expired = [k for k, (_, expires_at) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        self._next_sweep = now + self.sweep_interval_seconds
        if expired:
            logger.debug(f"Swept {len(expired)} expired cache entries")
        return len(expired)

    def _evict_overflow(self) -> None:
        overflow = len(self._entries) - self.max_entries
        if overflow <= 0:
            return
        soonest = sorted(self._entries.items(), key=lambda item: item[1][1])[:overflow]
        for key, _ in soonest:
            del self._entries[key]

    async def get(self, key: str) -> bytes | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> bool:
        if self._clock() >= self._next_sweep:
            self.purge_expired()
        self._entries[key] = (bytes(value), self._clock() + ttl_seconds)
        if len(self._entries) > self.max_entries:
            self.purge_expired()
            self._evict_overflow()
        return True

    def __len__(self) -> int:
        return len(self._entries)


class NullKeyValueStore:
    """Store used when caching is disabled; every read misses."""

    async def get(self, key: str) -> bytes | None:
        return None

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> bool:
        return False


class SqlKeyValueStore:
    """Store backed by the ``cache_entries`` table.

    Database errors are logged and reported as a miss or a failed write.
    """

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], clock: Clock = time.time):
        self._session_maker = session_maker
        self._clock = clock

    async def get(self, key: str) -> bytes | None:
        try:
            async with self._session_maker() as session:
                entry = await session.scalar(select(CacheEntry).where(CacheEntry.key == key))
                if entry is None:
                    return None
                if self._clock() >= entry.expires_at:
                    await session.execute(delete(CacheEntry).where(CacheEntry.key == key))
                    await session.commit()
                    return None
                return entry.value
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"Cache store read failed for {key}: {e}")
            return None

    async def set(self, key: str, value: bytes, ttl_seconds: int) -> bool:
        now = self._clock()
        try:
            async with self._session_maker() as session:
                await session.merge(CacheEntry(key=key, value=value, expires_at=now + ttl_seconds, created_at=now))
                await session.commit()
            return True
        except (SQLAlchemyError, OSError) as e:
            logger.warning(f"Cache store write failed for {key}: {e}")
            return False

    async def purge_expired(self) -> int:
        """Delete expired rows; returns the number removed."""
        async with self._session_maker() as session:
            result = await session.execute(delete(CacheEntry).where(CacheEntry.expires_at <= self._clock()))
            await session.commit()
            return result.rowcount or 0


def create_store(config: CacheSettings, db: DatabaseSettings | None = None) -> KeyValueStore:
    """Build the configured key/value store."""
    if config.backend == CacheBackend.NONE:
        logger.info("Result cache disabled")
        return NullKeyValueStore()
    if config.backend == CacheBackend.SQL:
        from .db import create_engine, create_session_maker

        db = db or DatabaseSettings()
        logger.info(f"Using SQL cache store: {db.url.split('@')[-1]}")
        return SqlKeyValueStore(create_session_maker(create_engine(db)))
    return MemoryKeyValueStore()


def fingerprint(
    answers: IntakeAnswers,
    profile: MatchingProfile,
    overrides: Mapping[str, Any] | None = None,
) -> str:
    """Stable short hash of everything that influences a match.

    Covers every raw answer, the derived matching profile and any
    per-request overrides. List answers are order-insensitive.
    """
    payload = json.dumps(
        {
            "child_description": answers.child_description,
            "three_words": answers.three_words,
            "interests": sorted(answers.interests),
            "grade": answers.grade_level,
            "timeline": answers.timeline,
            "values": sorted(answers.family_values),
            "characteristics": sorted(answers.selected_characteristics),
            "notes": answers.additional_notes,
            "profile": {
                "grade_band": profile.grade_band.value,
                "traits": sorted(profile.traits),
                "interests": sorted(profile.interests),
            },
            "overrides": dict(sorted((overrides or {}).items())),
        },
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


class ResultCache:
    """Memoizes ``SelectionResult`` payloads by questionnaire fingerprint."""

    KEY_PREFIX = "match:"
    CACHED_SUFFIX = ":cached"

    def __init__(self, store: KeyValueStore, *, ttl_seconds: int = 3600, read_timeout_ms: int = 200):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.read_timeout = read_timeout_ms / 1000.0
        self._pending: set[asyncio.Task] = set()

    @classmethod
    def key_for(cls, fp: str) -> str:
        return f"{cls.KEY_PREFIX}{fp}"

    async def get(self, fp: str, model_type):
        """Read and decode a cached result; any failure is a miss.

        Args:
            fp: Questionnaire fingerprint
            model_type: Pydantic model class used to decode the payload

        Returns:
            Decoded model with the cached suffix on ``strategy_used``, or None
        """
        key = self.key_for(fp)
        try:
            raw = await asyncio.wait_for(self.store.get(key), timeout=self.read_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Cache read timed out after {self.read_timeout * 1000:.0f}ms for {key}")
            return None
        except Exception as e:
            logger.warning(f"Cache read failed for {key}: {e}")
            return None
        if raw is None:
            return None

        try:
            result = model_type.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(f"Discarding undecodable cache entry {key}: {e.error_count()} errors")
            return None
        logger.info(f"Cache hit: {key}")
        if not result.strategy_used.endswith(self.CACHED_SUFFIX):
            result = result.model_copy(update={"strategy_used": result.strategy_used + self.CACHED_SUFFIX})
        return result

    def put(self, fp: str, result) -> asyncio.Task | None:
        """Schedule a background write; never blocks the response."""
        key = self.key_for(fp)
        payload = result.model_dump_json().encode("utf-8")
        try:
            task = asyncio.get_running_loop().create_task(self._write(key, payload))
        except RuntimeError:
            logger.warning(f"No running event loop; skipping cache write for {key}")
            return None
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _write(self, key: str, payload: bytes) -> None:
        try:
            stored = await self.store.set(key, payload, self.ttl_seconds)
        except Exception as e:
            logger.warning(f"Cache write failed for {key}: {e}")
            return
        if stored:
            logger.debug(f"Cached {key} for {self.ttl_seconds}s")

    async def drain(self) -> None:
        """Wait for pending background writes (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
