from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Literal, Protocol

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from article_images.core.config import Settings
from article_images.pipeline.models import DedupRecord
from article_images.services.fingerprint import hamming_distance

logger = logging.getLogger(__name__)

ClaimDecision = Literal["accepted", "already_owned", "exact_duplicate", "near_duplicate"]

DEDUP_TABLE_DDL = """
create table if not exists image_dedup_records (
  content_hash text primary key,
  perceptual_hash text,
  source_url text not null,
  article_url text not null,
  accepted_at timestamptz not null default now()
);
create index if not exists image_dedup_records_accepted_at_idx
  on image_dedup_records (accepted_at desc);
create index if not exists image_dedup_records_article_url_idx
  on image_dedup_records (article_url);
"""

# Serializes check-then-insert across every process sharing the database.
CLAIM_ADVISORY_LOCK_KEY = 0x1A6E_D0DE


class DedupStoreError(Exception):
    """Base dedup store error."""


class DedupStoreUnavailableError(DedupStoreError):
    """Raised when the durable store is misconfigured or unreachable."""


@dataclass(slots=True)
class ClaimResult:
    decision: ClaimDecision
    record: DedupRecord | None = None
    distance: int | None = None

    @property
    def accepted(self) -> bool:
        return self.decision in {"accepted", "already_owned"}


def evaluate_claim(
    *,
    incoming: DedupRecord,
    same_hash: DedupRecord | None,
    recent: list[DedupRecord],
    exact_threshold: int,
    near_threshold: int,
) -> ClaimResult:
    """Decide whether ``incoming`` may be recorded.

    An existing record with the same content hash owned by the same article is
    an idempotent re-acceptance; owned by another article it is a duplicate.
    Otherwise the closest perceptual match among ``recent`` decides: below
    ``exact_threshold`` is an exact duplicate, below ``near_threshold`` a near
    duplicate.
    """
    if same_hash is not None:
        if same_hash.article_url == incoming.article_url:
            return ClaimResult(decision="already_owned", record=same_hash, distance=0)
        return ClaimResult(decision="exact_duplicate", record=same_hash, distance=0)

    if not incoming.perceptual_hash:
        return ClaimResult(decision="accepted", record=incoming)

    closest: tuple[int, DedupRecord] | None = None
    for existing in recent:
        if not existing.perceptual_hash or len(existing.perceptual_hash) != len(incoming.perceptual_hash):
            continue
        distance = hamming_distance(incoming.perceptual_hash, existing.perceptual_hash)
        if closest is None or distance < closest[0]:
            closest = (distance, existing)

    if closest is None or closest[0] >= near_threshold:
        return ClaimResult(decision="accepted", record=incoming)

    distance, existing = closest
    if existing.article_url == incoming.article_url:
        return ClaimResult(decision="already_owned", record=existing, distance=distance)
    decision: ClaimDecision = "exact_duplicate" if distance < exact_threshold else "near_duplicate"
    return ClaimResult(decision=decision, record=existing, distance=distance)


class DedupStore(Protocol):
    async def find_by_content_hash(self, content_hash: str) -> DedupRecord | None: ...

    async def find_by_article(self, article_url: str) -> DedupRecord | None: ...

    async def recent(self, limit: int) -> list[DedupRecord]: ...

    async def check(
        self,
        record: DedupRecord,
        *,
        exact_threshold: int,
        near_threshold: int,
        scan_limit: int,
    ) -> ClaimResult: ...

    async def claim(
        self,
        record: DedupRecord,
        *,
        exact_threshold: int,
        near_threshold: int,
        scan_limit: int,
    ) -> ClaimResult: ...

    async def count(self) -> int: ...

    async def close(self) -> None: ...


class InMemoryDedupStore:
    """Process-local store; check and insert happen under one lock."""

    def __init__(self) -> None:
        self._by_hash: dict[str, DedupRecord] = {}
        self._by_article: dict[str, DedupRecord] = {}
        self._ordered: list[DedupRecord] = []
        self._lock = threading.Lock()

    async def find_by_content_hash(self, content_hash: str) -> DedupRecord | None:
        with self._lock:
            return self._by_hash.get(content_hash)

    async def find_by_article(self, article_url: str) -> DedupRecord | None:
        with self._lock:
            return self._by_article.get(article_url)

    async def recent(self, limit: int) -> list[DedupRecord]:
        with self._lock:
            return self._recent_locked(limit)

    async def check(
        self,
        record: DedupRecord,
        *,
        exact_threshold: int,
        near_threshold: int,
        scan_limit: int,
    ) -> ClaimResult:
        with self._lock:
            return self._evaluate_locked(record, exact_threshold, near_threshold, scan_limit)

    async def claim(
        self,
        record: DedupRecord,
        *,
        exact_threshold: int,
        near_threshold: int,
        scan_limit: int,
    ) -> ClaimResult:
        with self._lock:
            result = self._evaluate_locked(record, exact_threshold, near_threshold, scan_limit)
            if result.decision == "accepted":
                self._by_hash[record.content_hash] = record
                self._by_article.setdefault(record.article_url, record)
                self._ordered.append(record)
            return result

    async def count(self) -> int:
        with self._lock:
            return len(self._ordered)

    async def close(self) -> None:
        return None

    def _recent_locked(self, limit: int) -> list[DedupRecord]:
        return list(reversed(self._ordered[-limit:])) if limit > 0 else []

    def _evaluate_locked(
        self,
        record: DedupRecord,
        exact_threshold: int,
        near_threshold: int,
        scan_limit: int,
    ) -> ClaimResult:
        return evaluate_claim(
            incoming=record,
            same_hash=self._by_hash.get(record.content_hash),
            recent=self._recent_locked(scan_limit),
            exact_threshold=exact_threshold,
            near_threshold=near_threshold,
        )


class PostgresDedupStore:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def find_by_content_hash(self, content_hash: str) -> DedupRecord | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(_SELECT_BY_HASH_SQL, content_hash)
        except pg_exc.PostgresError as exc:
            raise DedupStoreError("dedup lookup failed") from exc
        return self._row_to_record(row) if row else None

    async def find_by_article(self, article_url: str) -> DedupRecord | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(_SELECT_BY_ARTICLE_SQL, article_url)
        except pg_exc.PostgresError as exc:
            raise DedupStoreError("dedup article lookup failed") from exc
        return self._row_to_record(row) if row else None

    async def recent(self, limit: int) -> list[DedupRecord]:
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(_SELECT_RECENT_SQL, limit)
        except pg_exc.PostgresError as exc:
            raise DedupStoreError("dedup scan failed") from exc
        return [self._row_to_record(row) for row in rows]

    async def check(
        self,
        record: DedupRecord,
        *,
        exact_threshold: int,
        near_threshold: int,
        scan_limit: int,
    ) -> ClaimResult:
        return evaluate_claim(
            incoming=record,
            same_hash=await self.find_by_content_hash(record.content_hash),
            recent=await self.recent(scan_limit),
            exact_threshold=exact_threshold,
            near_threshold=near_threshold,
        )

    async def claim(
        self,
        record: DedupRecord,
        *,
        exact_threshold: int,
        near_threshold: int,
        scan_limit: int,
    ) -> ClaimResult:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute("select pg_advisory_xact_lock($1)", CLAIM_ADVISORY_LOCK_KEY)
                    same_hash_row = await conn.fetchrow(_SELECT_BY_HASH_SQL, record.content_hash)
                    recent_rows = await conn.fetch(_SELECT_RECENT_SQL, scan_limit)
                    result = evaluate_claim(
                        incoming=record,
                        same_hash=self._row_to_record(same_hash_row) if same_hash_row else None,
                        recent=[self._row_to_record(row) for row in recent_rows],
                        exact_threshold=exact_threshold,
                        near_threshold=near_threshold,
                    )
                    if result.decision != "accepted":
                        return result
                    await conn.execute(
                        """
                        insert into image_dedup_records
                          (content_hash, perceptual_hash, source_url, article_url, accepted_at)
                        values ($1, $2, $3, $4, $5)
                        on conflict (content_hash) do nothing
                        """,
                        record.content_hash,
                        record.perceptual_hash,
                        record.source_url,
                        record.article_url,
                        record.accepted_at,
                    )
                    return result
        except pg_exc.PostgresError as exc:
            raise DedupStoreError("dedup claim failed") from exc

    async def count(self) -> int:
        pool = await self._get_pool()
        try:
            return int(await pool.fetchval("select count(*) from image_dedup_records"))
        except pg_exc.PostgresError as exc:
            raise DedupStoreError("dedup count failed") from exc

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise DedupStoreUnavailableError("AIMG_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            await pool.execute(DEDUP_TABLE_DDL)
        except Exception as exc:  # pragma: no cover - depends on environment
            raise DedupStoreUnavailableError("dedup database unavailable") from exc
        self._pool = pool
        return pool

    @staticmethod
    def _row_to_record(row: asyncpg.Record) -> DedupRecord:
        return DedupRecord(
            content_hash=row["content_hash"],
            perceptual_hash=row["perceptual_hash"],
            source_url=row["source_url"],
            article_url=row["article_url"],
            accepted_at=row["accepted_at"],
        )


_SELECT_BY_HASH_SQL = """
select content_hash, perceptual_hash, source_url, article_url, accepted_at
from image_dedup_records
where content_hash = $1
"""

_SELECT_BY_ARTICLE_SQL = """
select content_hash, perceptual_hash, source_url, article_url, accepted_at
from image_dedup_records
where article_url = $1
order by accepted_at asc
limit 1
"""

_SELECT_RECENT_SQL = """
select content_hash, perceptual_hash, source_url, article_url, accepted_at
from image_dedup_records
order by accepted_at desc
limit $1
"""


def build_dedup_store(settings: Settings) -> DedupStore:
    if settings.database_url:
        return PostgresDedupStore(
            database_url=settings.database_url,
            min_pool_size=settings.database_pool_min_size,
            max_pool_size=settings.database_pool_max_size,
        )
    logger.info("AIMG_DATABASE_URL not set; using in-memory dedup store")
    return InMemoryDedupStore()
