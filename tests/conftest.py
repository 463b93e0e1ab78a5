"""
Shared test fixtures.
"""

import time
import uuid
from contextlib import asynccontextmanager
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from royalties.matching.catalog_cache import ProcessingContext, build_snapshot
from royalties.models.database import Base
from royalties.models.tables import (
    AlternateTitle,
    Publisher,
    PublisherInWork,
    Recording,
    Work,
    Writer,
    WriterInWork,
)
from royalties.schemas.catalog import CachedPublisher, CachedRecording, CachedWriter, CatalogWork

TENANT = "tenant-a"


def make_work(
    work_id,
    title,
    work_code,
    iswc=None,
    writers=(),
    publishers=(),
    isrcs=(),
    alternate_titles=(),
    embedding=None,
):
    """writers: (id, first, last, share); publishers: (id, name, share)."""
    return CatalogWork(
        id=work_id,
        work_code=work_code,
        title=title,
        iswc=iswc,
        alternate_titles=tuple(alternate_titles),
        writers=tuple(
            CachedWriter(id=wid, first_name=first, last_name=last, share=Decimal(str(share)))
            for wid, first, last, share in writers
        ),
        publishers=tuple(
            CachedPublisher(id=pid, name=name, code=pid.upper()[:10], share=Decimal(str(share)))
            for pid, name, share in publishers
        ),
        recordings=tuple(CachedRecording(isrc=i) for i in isrcs),
        embedding=tuple(embedding) if embedding else None,
    )


@pytest.fixture
def catalog_works():
    """A small Beatles catalog plus one ISRC shared by two works."""
    return [
        make_work(
            "w-yesterday",
            "Yesterday",
            "BEA001",
            iswc="T-010.140.739-1",
            writers=[("wr-lennon", "John", "Lennon", 50), ("wr-mccartney", "Paul", "McCartney", 50)],
            isrcs=["GBAYE6500001"],
        ),
        make_work(
            "w-letitbe",
            "Let It Be",
            "BEA002",
            iswc="T-010.140.740-2",
            writers=[("wr-mccartney", "Paul", "McCartney", 100)],
            isrcs=["USRC17607839"],
        ),
        make_work(
            "w-help",
            "Help!",
            "BEA003",
            writers=[("wr-lennon", "John", "Lennon", 50), ("wr-mccartney", "Paul", "McCartney", 50)],
            isrcs=["USRC17607839"],
        ),
    ]


@pytest.fixture
def snapshot(catalog_works):
    return build_snapshot(TENANT, catalog_works, loaded_at=time.monotonic())


@pytest.fixture
def make_ctx(snapshot):
    """Fresh ProcessingContext over the shared snapshot."""
    def factory(statement_id="stmt-1"):
        return ProcessingContext(tenant_id=TENANT, statement_id=statement_id, snapshot=snapshot)
    return factory


@pytest.fixture
def open_db(tmp_path):
    """
    Async context manager factory yielding a session factory over a fresh
    SQLite file with every table created. Use inside asyncio.run.
    """
    url = f"sqlite+aiosqlite:///{tmp_path / 'royalties.db'}"

    @asynccontextmanager
    async def _open():
        engine = create_async_engine(url)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        try:
            yield async_sessionmaker(engine, expire_on_commit=False)
        finally:
            await engine.dispose()

    return _open


async def seed_catalog(session_factory, tenant_id=TENANT) -> dict:
    """Write the Beatles catalog into the catalog tables. Returns ids by name."""
    ids = {name: uuid.uuid4() for name in (
        "yesterday", "letitbe", "lennon", "mccartney", "northern",
    )}
    async with session_factory() as session:
        session.add_all([
            Work(id=ids["yesterday"], tenant_id=tenant_id, work_code="BEA001",
                 title="Yesterday", iswc="T0101407391"),
            Work(id=ids["letitbe"], tenant_id=tenant_id, work_code="BEA002",
                 title="Let It Be", iswc="T0101407402"),
            Writer(id=ids["lennon"], tenant_id=tenant_id, first_name="John", last_name="Lennon"),
            Writer(id=ids["mccartney"], tenant_id=tenant_id, first_name="Paul",
                   last_name="McCartney", is_controlled=True),
            Publisher(id=ids["northern"], tenant_id=tenant_id, name="Northern Songs",
                      publisher_code="NS"),
        ])
        await session.flush()
        session.add_all([
            WriterInWork(tenant_id=tenant_id, work_id=ids["yesterday"], writer_id=ids["lennon"],
                         share=Decimal("25"), mr_share=Decimal("50")),
            WriterInWork(tenant_id=tenant_id, work_id=ids["yesterday"], writer_id=ids["mccartney"],
                         share=Decimal("25"), mr_share=Decimal("50")),
            PublisherInWork(tenant_id=tenant_id, work_id=ids["yesterday"],
                            publisher_id=ids["northern"], share=Decimal("50"),
                            mr_share=Decimal("0")),
            WriterInWork(tenant_id=tenant_id, work_id=ids["letitbe"], writer_id=ids["mccartney"],
                         share=Decimal("100")),
            Recording(tenant_id=tenant_id, work_id=ids["yesterday"], isrc="GBAYE6500001",
                      recording_title="Yesterday (Remastered)"),
            AlternateTitle(tenant_id=tenant_id, work_id=ids["letitbe"], title="Let It Be (Naked)"),
        ])
        await session.commit()
    return {k: str(v) for k, v in ids.items()}


@pytest.fixture
def seed():
    return seed_catalog
