"""
Tenant catalog cache.

A statement with tens of thousands of rows must not issue one catalog query
per row. The cache loads a tenant's whole catalog once, indexes it by
identifier, and hands the same immutable snapshot to every processing run
until the TTL expires or the catalog is invalidated.
"""

import asyncio
import time
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from types import MappingProxyType
from typing import Callable, Mapping, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from royalties.config import settings
from royalties.matching.normalize import normalize_identifier
from royalties.models.database import get_session_factory
from royalties.models.tables import (
    AlternateTitle,
    Publisher,
    PublisherInWork,
    Recording,
    Work,
    Writer,
    WriterInWork,
)
from royalties.observability.metrics import (
    catalog_cache_hits_total,
    catalog_cache_load_seconds,
    catalog_cache_loads_total,
)
from royalties.schemas.catalog import CachedPublisher, CachedRecording, CachedWriter, CatalogWork
from royalties.schemas.statements import ProcessingStats

logger = structlog.get_logger(__name__)

# Rough per-work footprint used by stats()
_AVG_WORK_BYTES = 2000


class CatalogSource(ABC):
    """Read interface over a tenant's catalog."""

    @abstractmethod
    async def load_works(self, tenant_id: str) -> list[CatalogWork]:
        """Return every work of the tenant with writers, publishers, recordings."""
        ...


class SqlCatalogSource(CatalogSource):
    """
    Loads the catalog tables with one query per table group, never per work.
    Without an explicit session factory the process-wide one is resolved per
    load, so the source survives engine disposal between worker jobs.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self.session_factory = session_factory

    async def load_works(self, tenant_id: str) -> list[CatalogWork]:
        factory = self.session_factory or get_session_factory()
        async with factory() as session:
            works = (
                await session.execute(
                    select(Work).where(Work.tenant_id == tenant_id).order_by(Work.work_code)
                )
            ).scalars().all()

            writer_rows = (
                await session.execute(
                    select(WriterInWork, Writer)
                    .join(Writer, WriterInWork.writer_id == Writer.id)
                    .where(WriterInWork.tenant_id == tenant_id)
                )
            ).all()

            publisher_rows = (
                await session.execute(
                    select(PublisherInWork, Publisher)
                    .join(Publisher, PublisherInWork.publisher_id == Publisher.id)
                    .where(PublisherInWork.tenant_id == tenant_id)
                )
            ).all()

            recordings = (
                await session.execute(select(Recording).where(Recording.tenant_id == tenant_id))
            ).scalars().all()

            alternates = (
                await session.execute(
                    select(AlternateTitle).where(AlternateTitle.tenant_id == tenant_id)
                )
            ).scalars().all()

        writers_by_work: dict[uuid.UUID, list[CachedWriter]] = defaultdict(list)
        for link, writer in writer_rows:
            writers_by_work[link.work_id].append(
                CachedWriter(
                    id=str(writer.id),
                    first_name=writer.first_name or "",
                    last_name=writer.last_name,
                    share=link.share,
                    right_shares=_right_shares(link),
                    is_controlled=link.is_controlled or writer.is_controlled,
                )
            )

        publishers_by_work: dict[uuid.UUID, list[CachedPublisher]] = defaultdict(list)
        for link, publisher in publisher_rows:
            publishers_by_work[link.work_id].append(
                CachedPublisher(
                    id=str(publisher.id),
                    code=publisher.publisher_code,
                    name=publisher.name,
                    share=link.share,
                    right_shares=_right_shares(link),
                )
            )

        recordings_by_work: dict[uuid.UUID, list[CachedRecording]] = defaultdict(list)
        for rec in recordings:
            recordings_by_work[rec.work_id].append(
                CachedRecording(isrc=rec.isrc, title=rec.recording_title)
            )

        alternates_by_work: dict[uuid.UUID, list[str]] = defaultdict(list)
        for alt in alternates:
            alternates_by_work[alt.work_id].append(alt.title)

        return [
            CatalogWork(
                id=str(w.id),
                work_code=w.work_code,
                title=w.title,
                iswc=w.iswc,
                alternate_titles=tuple(alternates_by_work.get(w.id, ())),
                writers=tuple(writers_by_work.get(w.id, ())),
                publishers=tuple(publishers_by_work.get(w.id, ())),
                recordings=tuple(recordings_by_work.get(w.id, ())),
                embedding=tuple(w.embedding) if w.embedding else None,
            )
            for w in works
        ]


def _right_shares(link) -> dict[str, Decimal]:
    shares = {
        "performance": link.pr_share,
        "mechanical": link.mr_share,
        "sync": link.sr_share,
    }
    return {k: v for k, v in shares.items() if v is not None}


@dataclass(frozen=True, eq=False)
class CatalogSnapshot:
    """
    Immutable view of one tenant's catalog plus identifier indices.
    Mappings are read-only proxies; a catalog change means a new snapshot.
    """
    tenant_id: str
    works: Mapping[str, CatalogWork]
    iswc_index: Mapping[str, str]
    isrc_index: Mapping[str, tuple[str, ...]]
    work_code_index: Mapping[str, str]
    loaded_at: float
    loaded_at_utc: datetime
    warnings: tuple[str, ...] = ()

    @property
    def embeddings_ready(self) -> bool:
        return bool(self.works) and all(w.embedding for w in self.works.values())

    def get_work(self, work_id: str) -> Optional[CatalogWork]:
        return self.works.get(work_id)


@dataclass
class ProcessingContext:
    """Per-run aggregate: a shared snapshot plus this run's statistics."""
    tenant_id: str
    statement_id: str
    snapshot: CatalogSnapshot
    stats: ProcessingStats = field(default_factory=ProcessingStats)


def build_snapshot(tenant_id: str, works: list[CatalogWork], loaded_at: float) -> CatalogSnapshot:
    """Index a list of works. First work wins on duplicate ISWC or work code."""
    by_id: dict[str, CatalogWork] = {}
    iswc_index: dict[str, str] = {}
    isrc_index: dict[str, list[str]] = {}
    work_code_index: dict[str, str] = {}
    warnings: list[str] = []

    for work in works:
        if work.id in by_id:
            warnings.append(f"Duplicate work id {work.id}; keeping first occurrence")
            continue
        by_id[work.id] = work

        iswc = normalize_identifier(work.iswc)
        if iswc:
            if iswc in iswc_index:
                warnings.append(
                    f"ISWC {work.iswc} shared by works {iswc_index[iswc]} and {work.id}"
                )
            else:
                iswc_index[iswc] = work.id

        code = normalize_identifier(work.work_code)
        if code:
            if code in work_code_index:
                warnings.append(
                    f"Work code {work.work_code} shared by works {work_code_index[code]} and {work.id}"
                )
            else:
                work_code_index[code] = work.id

        for rec in work.recordings:
            isrc = normalize_identifier(rec.isrc)
            if not isrc:
                continue
            ids = isrc_index.setdefault(isrc, [])
            if work.id not in ids:
                ids.append(work.id)

    return CatalogSnapshot(
        tenant_id=tenant_id,
        works=MappingProxyType(by_id),
        iswc_index=MappingProxyType(iswc_index),
        isrc_index=MappingProxyType({k: tuple(v) for k, v in isrc_index.items()}),
        work_code_index=MappingProxyType(work_code_index),
        loaded_at=loaded_at,
        loaded_at_utc=datetime.now(timezone.utc),
        warnings=tuple(warnings),
    )


class CatalogCache:
    """
    Per-tenant snapshot store with TTL and explicit invalidation.

    One instance is shared by every processing run in a process. Concurrent
    cold loads for the same tenant wait on a per-tenant lock so the catalog is
    read once.
    """

    def __init__(
        self,
        source: CatalogSource,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.source = source
        self.ttl_seconds = settings.CATALOG_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._snapshots: dict[str, CatalogSnapshot] = {}
        self._locks: dict[str, tuple[asyncio.AbstractEventLoop, asyncio.Lock]] = {}

    async def load(self, tenant_id: str) -> CatalogSnapshot:
        """Read the tenant catalog and replace any cached snapshot."""
        started = self._clock()
        perf_start = time.perf_counter()
        works = await self.source.load_works(tenant_id)
        snapshot = build_snapshot(tenant_id, works, loaded_at=started)
        self._snapshots[tenant_id] = snapshot

        catalog_cache_loads_total.inc()
        catalog_cache_load_seconds.observe(time.perf_counter() - perf_start)
        logger.info(
            "catalog_loaded",
            tenant_id=tenant_id,
            work_count=len(snapshot.works),
            isrc_count=len(snapshot.isrc_index),
            embeddings_ready=snapshot.embeddings_ready,
            warnings=len(snapshot.warnings),
        )
        for warning in snapshot.warnings:
            logger.warning("catalog_integrity_warning", tenant_id=tenant_id, detail=warning)
        return snapshot

    async def get(self, tenant_id: str, statement_id: str) -> ProcessingContext:
        """Fresh snapshot wrapped in a new ProcessingContext, reloading if stale."""
        snapshot = self._fresh(tenant_id)
        if snapshot is not None:
            catalog_cache_hits_total.inc()
            logger.debug("catalog_cache_hit", tenant_id=tenant_id, work_count=len(snapshot.works))
        else:
            async with self._lock_for(tenant_id):
                snapshot = self._fresh(tenant_id)
                if snapshot is None:
                    snapshot = await self.load(tenant_id)
                else:
                    catalog_cache_hits_total.inc()

        return ProcessingContext(tenant_id=tenant_id, statement_id=statement_id, snapshot=snapshot)

    def peek(self, tenant_id: str) -> Optional[CatalogSnapshot]:
        """Current snapshot regardless of age, without loading."""
        return self._snapshots.get(tenant_id)

    def invalidate(self, tenant_id: str) -> None:
        """Drop a tenant's snapshot; the next get() reloads it."""
        if self._snapshots.pop(tenant_id, None) is not None:
            logger.info("catalog_cache_invalidated", tenant_id=tenant_id)

    def invalidate_all(self) -> None:
        count = len(self._snapshots)
        self._snapshots.clear()
        logger.info("catalog_cache_cleared", tenants=count)

    def stats(self) -> dict:
        total_works = sum(len(s.works) for s in self._snapshots.values())
        return {
            "tenants": len(self._snapshots),
            "total_works": total_works,
            "estimated_memory_bytes": total_works * _AVG_WORK_BYTES,
        }

    def _fresh(self, tenant_id: str) -> Optional[CatalogSnapshot]:
        snapshot = self._snapshots.get(tenant_id)
        if snapshot is None:
            return None
        if self._clock() - snapshot.loaded_at >= self.ttl_seconds:
            return None
        return snapshot

    def _lock_for(self, tenant_id: str) -> asyncio.Lock:
        # Locks bind to an event loop; worker jobs each run their own loop
        loop = asyncio.get_running_loop()
        entry = self._locks.get(tenant_id)
        if entry is None or entry[0] is not loop:
            entry = (loop, asyncio.Lock())
            self._locks[tenant_id] = entry
        return entry[1]
