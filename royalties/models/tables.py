"""
SQLAlchemy ORM models.

Two groups of tables:
- royalty processing state (statements, rows, review queue, distributions)
- the tenant-scoped catalog read by the catalog cache

Catalog references held by royalty tables (work/writer/publisher ids) are plain
strings: the catalog belongs to the tenant storage layer and is only read here.
"""

import uuid
from datetime import datetime, date
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from royalties.models.database import Base

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ────────────────────────────────────────────────────────────
# STATEMENTS
# ────────────────────────────────────────────────────────────
class Statement(Base):
    __tablename__ = "royalty_statements"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    filename: Mapped[str] = mapped_column(Text, nullable=False)
    format: Mapped[str] = mapped_column(String(10), nullable=False)
    source: Mapped[str] = mapped_column(String(50), nullable=False, default="CUSTOM")
    period_start: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    period_end: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    total_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False, default=Decimal("0"))
    row_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="uploaded")
    uploaded_by: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processing_completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    stats_json: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    rows = relationship("StatementRowRecord", back_populates="statement", cascade="all, delete-orphan")

    __table_args__ = (
        Index("idx_statements_tenant", "tenant_id"),
        Index("idx_statements_status", "status"),
        Index("idx_statements_source", "source"),
    )


# ────────────────────────────────────────────────────────────
# STATEMENT ROWS
# ────────────────────────────────────────────────────────────
class StatementRowRecord(Base):
    __tablename__ = "royalty_statement_rows"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    statement_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("royalty_statements.id", ondelete="CASCADE"), nullable=False
    )
    row_number: Mapped[int] = mapped_column(Integer, nullable=False)
    raw_data: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)

    # Normalized fields
    work_title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    writer_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    writer_first_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    writer_last_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    performer_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    iswc: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    isrc: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    work_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    publisher_code: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Financial
    amount: Mapped[Decimal] = mapped_column(Numeric(15, 4), nullable=False)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    right_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    usage_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    usage_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    territory: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    period_start: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    period_end: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    # Matching
    match_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    matched_work_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    match_confidence: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 4), nullable=True)
    match_method: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    match_candidates: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    review_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    reviewed_by: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    statement = relationship("Statement", back_populates="rows")

    __table_args__ = (
        UniqueConstraint("statement_id", "row_number", name="uq_statement_row_number"),
        Index("idx_stmt_rows_statement", "statement_id"),
        Index("idx_stmt_rows_status", "match_status"),
        Index("idx_stmt_rows_work", "matched_work_id"),
    )


# ────────────────────────────────────────────────────────────
# REVIEW QUEUE
# ────────────────────────────────────────────────────────────
class ReviewQueueItem(Base):
    __tablename__ = "royalty_review_queue"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    statement_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("royalty_statements.id", ondelete="CASCADE"), nullable=False
    )
    row_number: Mapped[int] = mapped_column(Integer, nullable=False)
    statement_row: Mapped[dict] = mapped_column(JSONType, nullable=False)
    match_result: Mapped[dict] = mapped_column(JSONType, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    assigned_to: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolution_json: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("statement_id", "row_number", name="uq_review_statement_row"),
        Index("idx_review_status", "status", "priority"),
        Index("idx_review_statement", "statement_id"),
        Index("idx_review_assigned", "assigned_to"),
    )


# ────────────────────────────────────────────────────────────
# DISTRIBUTIONS
# ────────────────────────────────────────────────────────────
class DistributionRecord(Base):
    __tablename__ = "royalty_distributions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    statement_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("royalty_statements.id", ondelete="CASCADE"), nullable=False
    )
    work_id: Mapped[str] = mapped_column(String(64), nullable=False)
    writer_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    publisher_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    gross_amount: Mapped[Decimal] = mapped_column(Numeric(15, 4), nullable=False)
    share_percentage: Mapped[Decimal] = mapped_column(Numeric(7, 4), nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    adjustment: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False, default=Decimal("0"))

    right_type: Mapped[str] = mapped_column(String(20), nullable=False)
    usage_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    territory: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    period_start: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    period_end: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    source_row_numbers: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    status: Mapped[str] = mapped_column(String(20), nullable=False, default="calculated")
    payout_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "(writer_id IS NULL) <> (publisher_id IS NULL)",
            name="ck_distribution_single_party",
        ),
        Index("idx_distributions_statement", "statement_id"),
        Index("idx_distributions_work", "work_id"),
        Index("idx_distributions_writer", "writer_id"),
        Index("idx_distributions_publisher", "publisher_id"),
        Index("idx_distributions_status", "status"),
    )


# ────────────────────────────────────────────────────────────
# CATALOG (tenant-scoped, read by the catalog cache)
# ────────────────────────────────────────────────────────────
class Work(Base):
    __tablename__ = "works"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    work_code: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(600), nullable=False)
    iswc: Mapped[Optional[str]] = mapped_column(String(15), nullable=True)
    embedding: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "work_code", name="uq_works_tenant_code"),
        Index("idx_works_tenant", "tenant_id"),
        Index("idx_works_iswc", "iswc"),
    )


class Writer(Base):
    __tablename__ = "writers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    ipi_name_number: Mapped[Optional[str]] = mapped_column(String(11), nullable=True)
    is_controlled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (Index("idx_writers_name", "last_name", "first_name"),)


class Publisher(Base):
    __tablename__ = "publishers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    publisher_code: Mapped[str] = mapped_column(String(10), nullable=False)

    __table_args__ = (Index("idx_publishers_code", "publisher_code"),)


class WriterInWork(Base):
    __tablename__ = "writers_in_works"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    work_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("works.id", ondelete="CASCADE"), nullable=False
    )
    writer_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("writers.id", ondelete="RESTRICT"), nullable=False
    )
    role: Mapped[str] = mapped_column(String(2), nullable=False, default="CA")
    share: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    pr_share: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    mr_share: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    sr_share: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    is_controlled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    __table_args__ = (
        CheckConstraint("share >= 0 AND share <= 100", name="ck_wiw_share"),
        Index("idx_wiw_work", "work_id"),
        Index("idx_wiw_writer", "writer_id"),
    )


class PublisherInWork(Base):
    __tablename__ = "publishers_in_works"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    work_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("works.id", ondelete="CASCADE"), nullable=False
    )
    publisher_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("publishers.id", ondelete="RESTRICT"), nullable=False
    )
    role: Mapped[str] = mapped_column(String(2), nullable=False, default="E")
    share: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)
    pr_share: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    mr_share: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    sr_share: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)

    __table_args__ = (Index("idx_piw_work", "work_id"),)


class Recording(Base):
    __tablename__ = "recordings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    work_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("works.id", ondelete="CASCADE"), nullable=False
    )
    isrc: Mapped[Optional[str]] = mapped_column(String(15), nullable=True)
    recording_title: Mapped[Optional[str]] = mapped_column(String(600), nullable=True)

    __table_args__ = (
        Index("idx_recordings_work", "work_id"),
        Index("idx_recordings_isrc", "isrc"),
    )


class AlternateTitle(Base):
    __tablename__ = "alternate_titles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    work_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("works.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(600), nullable=False)
    title_type: Mapped[str] = mapped_column(String(2), nullable=False, default="AT")

    __table_args__ = (Index("idx_alt_titles_work", "work_id"),)
