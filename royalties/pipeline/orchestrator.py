"""
Statement processor: coordinates upload, parsing, matching, review routing
and distribution for one royalty statement.

Status flow: uploaded → processing → matching → (review | completed)
Any failure moves the statement to failed and keeps what was persisted.
"""

import inspect
import time
import traceback
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Awaitable, Callable, Optional, Union

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from royalties.config import settings
from royalties.distribution.calculator import (
    DistributionCalculator,
    calculate_statement_distributions,
)
from royalties.matching.ai import OpenAIEmbedder, OpenAIReranker, build_client
from royalties.matching.catalog_cache import CatalogCache, SqlCatalogSource
from royalties.matching.engine import MatchingConfig, MatchingEngine, update_stats
from royalties.matching.stages import InMemoryVectorIndex, SemanticCandidateSource
from royalties.models.database import get_session_factory
from royalties.models.enums import (
    DistributionStatus,
    MatchStatus,
    ReviewStatus,
    StatementStatus,
)
from royalties.models.tables import (
    DistributionRecord,
    ReviewQueueItem,
    Statement,
    StatementRowRecord,
)
from royalties.observability.logging import bind_statement_context
from royalties.observability.metrics import (
    statement_processing_duration_seconds,
    statements_failed_total,
    statements_processed_total,
    statements_uploaded_total,
)
from royalties.pipeline.statement_parser import CsvStatementParser, StatementParser
from royalties.review.queue import enqueue_for_review
from royalties.schemas.statements import (
    DistributionResult,
    MatchResult,
    ProcessingOptions,
    ProcessingResult,
    ProcessingStats,
    StatementInfo,
    StatementMetadata,
    StatementRow,
)

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[int, int], Union[None, Awaitable[None]]]

# Rows whose amount counts as matched in the processing stats
_MATCHED_AMOUNT_STATUSES = (MatchStatus.EXACT, MatchStatus.FUZZY_HIGH)


class ProcessingError(Exception):
    """Fatal statement processing error."""
    def __init__(self, message: str, error_code: str = "ERR_PROCESSING"):
        self.message = message
        self.error_code = error_code
        super().__init__(message)


def build_matching_engine(
    cache: CatalogCache, config: Optional[MatchingConfig] = None
) -> MatchingEngine:
    """Matching engine with the semantic and rerank stages switched on by settings."""
    semantic_source = None
    reranker = None
    if settings.ENABLE_SEMANTIC_SEARCH or settings.ENABLE_RERANK:
        client = build_client()
        if settings.ENABLE_SEMANTIC_SEARCH:
            semantic_source = SemanticCandidateSource(
                embedder=OpenAIEmbedder(client),
                index=InMemoryVectorIndex(cache),
                top_k=settings.SEMANTIC_TOP_K,
                min_similarity=settings.SEMANTIC_MIN_SIMILARITY,
            )
        if settings.ENABLE_RERANK:
            reranker = OpenAIReranker(client)
    return MatchingEngine(config, semantic_source=semantic_source, reranker=reranker)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def to_statement_info(record: Statement) -> StatementInfo:
    return StatementInfo(
        id=str(record.id),
        tenant_id=record.tenant_id,
        filename=record.filename,
        format=record.format,
        source=record.source,
        period_start=record.period_start,
        period_end=record.period_end,
        currency=record.currency,
        total_amount=record.total_amount,
        row_count=record.row_count,
        status=record.status,
        uploaded_by=record.uploaded_by,
        processing_started_at=record.processing_started_at,
        processing_completed_at=record.processing_completed_at,
        error_message=record.error_message,
        stats=record.stats_json,
        created_at=record.created_at,
    )


def _row_values(row: StatementRow) -> dict:
    values = row.model_dump()
    values["match_status"] = row.match_status.value
    values["match_method"] = row.match_method.value if row.match_method else None
    return values


def _match_values(row_id: uuid.UUID, result: MatchResult) -> dict:
    return {
        "id": row_id,
        "match_status": result.status.value,
        "matched_work_id": result.matched_work_id,
        "match_confidence": Decimal(str(round(result.confidence, 4))),
        "match_method": result.method.value if result.method else None,
        "match_candidates": [c.model_dump(mode="json") for c in result.candidates],
    }


class RoyaltyProcessor:
    """
    Processes royalty statements end-to-end.
    One instance (and its catalog cache) can serve many statements.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        cache: Optional[CatalogCache] = None,
        engine: Optional[MatchingEngine] = None,
        parser: Optional[StatementParser] = None,
        calculator: Optional[DistributionCalculator] = None,
    ):
        self._session_factory = session_factory
        self.cache = cache or CatalogCache(SqlCatalogSource(session_factory))
        self.engine = engine or build_matching_engine(self.cache)
        self.parser = parser or CsvStatementParser()
        self.calculator = calculator or DistributionCalculator()

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    # ─── Upload ───────────────────────────────────────────────

    async def upload_statement(
        self,
        tenant_id: str,
        content: Union[bytes, str],
        filename: str,
        metadata: Optional[StatementMetadata] = None,
        uploaded_by: Optional[str] = None,
    ) -> StatementInfo:
        """
        Parse the file once to record its format, row count and total, and
        create the statement in the uploaded state.
        """
        metadata = metadata or StatementMetadata()
        parsed = self.parser.parse(content, filename)
        if not parsed.rows:
            raise ProcessingError(
                "; ".join(parsed.errors) or "Statement contains no rows",
                "ERR_PARSE" if parsed.errors else "ERR_EMPTY_STATEMENT",
            )

        total = sum((r.amount for r in parsed.rows), Decimal("0"))
        currency = (
            metadata.currency
            or next((r.currency for r in parsed.rows if r.currency), None)
            or settings.DEFAULT_CURRENCY
        )
        record = Statement(
            tenant_id=tenant_id,
            filename=filename,
            format=parsed.format,
            source=metadata.source,
            period_start=metadata.period_start,
            period_end=metadata.period_end,
            currency=currency.upper(),
            total_amount=total,
            row_count=len(parsed.rows),
            status=StatementStatus.UPLOADED.value,
            uploaded_by=uploaded_by,
        )
        async with self.session_factory() as session:
            session.add(record)
            await session.commit()
            await session.refresh(record)

        statements_uploaded_total.labels(source=metadata.source).inc()
        logger.info(
            "statement_uploaded",
            statement_id=str(record.id),
            tenant_id=tenant_id,
            filename=filename,
            format=parsed.format,
            row_count=len(parsed.rows),
            total_amount=str(total),
            parse_errors=len(parsed.errors),
        )
        return to_statement_info(record)

    # ─── Processing ───────────────────────────────────────────

    async def process_statement(
        self,
        statement_id: str,
        content: Union[bytes, str],
        options: Optional[ProcessingOptions] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ProcessingResult:
        """
        Main entry point: parse, match, route to review and optionally
        distribute one statement. Reprocessing replaces the previous run.
        """
        options = options or ProcessingOptions()
        started = time.perf_counter()
        stmt_uuid = uuid.UUID(statement_id)

        async with self.session_factory() as session:
            statement = await session.get(Statement, stmt_uuid)
            if statement is None:
                statements_failed_total.labels(error_code="ERR_STATEMENT_NOT_FOUND").inc()
                raise ProcessingError(
                    f"Statement {statement_id} not found", "ERR_STATEMENT_NOT_FOUND"
                )
            tenant_id = statement.tenant_id
            filename = statement.filename

        bind_statement_context(statement_id, tenant_id)
        logger.info("processing_started", filename=filename)

        stats = ProcessingStats(started_at=_now())
        errors: list[str] = []
        warnings: list[str] = []

        try:
            await self._update_statement(
                stmt_uuid,
                status=StatementStatus.PROCESSING.value,
                processing_started_at=stats.started_at,
                processing_completed_at=None,
                error_message=None,
            )

            # ── Parse ──
            parsed = self.parser.parse(content, filename, options.column_mappings)
            errors.extend(parsed.errors)
            warnings.extend(parsed.warnings)
            stats.errors = len(parsed.errors)
            if not parsed.rows:
                if parsed.errors:
                    raise ProcessingError(
                        f"No valid rows found in statement: {'; '.join(parsed.errors[:5])}",
                        "ERR_PARSE",
                    )
                raise ProcessingError("Statement contains no rows", "ERR_EMPTY_STATEMENT")

            rows = sorted(parsed.rows, key=lambda r: r.row_number)
            row_ids = await self._save_rows(stmt_uuid, rows)
            stats.total_rows = len(rows)
            stats.total_amount = sum((r.amount for r in rows), Decimal("0"))
            logger.info("rows_saved", row_count=len(rows), parse_errors=len(parsed.errors))

            # ── Match ──
            # ctx.stats follows the engine; `stats` only counts committed batches
            ctx = await self.cache.get(tenant_id, statement_id)
            warnings.extend(f"Catalog: {w}" for w in ctx.snapshot.warnings)
            await self._update_statement(stmt_uuid, status=StatementStatus.MATCHING.value)

            results: list[MatchResult] = []
            async for batch in self.engine.iter_batches(rows, ctx):
                pending = stats.model_copy()
                update_stats(pending, results + batch)
                await self._persist_batch(stmt_uuid, row_ids, batch, pending)
                stats = pending
                results.extend(batch)
                for result in batch:
                    warnings.extend(result.warnings)
                    warnings.extend(
                        f"Row {result.row_number}: {e.stage} stage unavailable: {e.message}"
                        for e in result.stage_errors
                    )
                logger.info(
                    "batch_matched",
                    processed=stats.processed_rows,
                    total=stats.total_rows,
                )
                if on_progress is not None:
                    maybe = on_progress(stats.processed_rows, stats.total_rows)
                    if inspect.isawaitable(maybe):
                        await maybe

            by_number = {r.row_number: r for r in results}
            stats.matched_amount = sum(
                (
                    row.amount
                    for row in rows
                    if by_number[row.row_number].status in _MATCHED_AMOUNT_STATUSES
                ),
                Decimal("0"),
            )
            stats.unmatched_amount = stats.total_amount - stats.matched_amount

            # ── Review ──
            async with self.session_factory() as session:
                review_count = await enqueue_for_review(
                    session,
                    statement_id,
                    ((row, by_number[row.row_number]) for row in rows),
                )
                await session.commit()

            # ── Distribute ──
            distribution = None
            if options.auto_distribute:
                async with self.session_factory() as session:
                    dist = await calculate_statement_distributions(
                        session, statement_id, ctx.snapshot, self.calculator
                    )
                    await session.commit()
                distribution = dist.summary
                warnings.extend(distribution.warnings)

            final_status = StatementStatus.REVIEW if review_count else StatementStatus.COMPLETED
            stats.ended_at = _now()
            await self._update_statement(
                stmt_uuid,
                status=final_status.value,
                processing_completed_at=stats.ended_at,
                stats_json=stats.model_dump(mode="json"),
            )

            duration = time.perf_counter() - started
            statements_processed_total.labels(final_status=final_status.value).inc()
            statement_processing_duration_seconds.observe(duration)
            logger.info(
                "processing_complete",
                status=final_status.value,
                total_rows=stats.total_rows,
                exact=stats.exact_matches,
                fuzzy=stats.fuzzy_matches,
                no_match=stats.no_matches,
                review_items=review_count,
                matched_amount=str(stats.matched_amount),
                duration_s=round(duration, 2),
            )
            return ProcessingResult(
                statement_id=statement_id,
                status=final_status.value,
                stats=stats,
                distribution=distribution,
                errors=errors,
                warnings=warnings,
            )

        except ProcessingError as e:
            await self._fail_statement(stmt_uuid, e, stats)
            raise
        except SQLAlchemyError as e:
            err = ProcessingError(f"Persistence failure: {e}", "ERR_PERSISTENCE")
            await self._fail_statement(stmt_uuid, err, stats)
            raise err from e
        except Exception as e:
            logger.error(
                "processing_failed",
                error=str(e),
                traceback=traceback.format_exc(),
            )
            err = ProcessingError(str(e) or type(e).__name__, "ERR_PROCESSING")
            await self._fail_statement(stmt_uuid, err, stats)
            raise err from e

    async def _save_rows(
        self, stmt_uuid: uuid.UUID, rows: list[StatementRow]
    ) -> dict[int, uuid.UUID]:
        """
        Replace the statement's rows. Pending review items and calculated
        distributions from an earlier run go too; resolved review items stay
        as history and are reopened if their row is routed again.
        """
        row_ids = {row.row_number: uuid.uuid4() for row in rows}
        async with self.session_factory() as session:
            await session.execute(
                delete(StatementRowRecord).where(StatementRowRecord.statement_id == stmt_uuid)
            )
            await session.execute(
                delete(ReviewQueueItem).where(
                    ReviewQueueItem.statement_id == stmt_uuid,
                    ReviewQueueItem.status == ReviewStatus.PENDING.value,
                )
            )
            await session.execute(
                delete(DistributionRecord).where(
                    DistributionRecord.statement_id == stmt_uuid,
                    DistributionRecord.status == DistributionStatus.CALCULATED.value,
                )
            )
            session.add_all(
                StatementRowRecord(id=row_ids[row.row_number], statement_id=stmt_uuid, **_row_values(row))
                for row in rows
            )
            await session.execute(
                update(Statement)
                .where(Statement.id == stmt_uuid)
                .values(
                    row_count=len(rows),
                    total_amount=sum((r.amount for r in rows), Decimal("0")),
                )
            )
            await session.commit()
        return row_ids

    async def _persist_batch(
        self,
        stmt_uuid: uuid.UUID,
        row_ids: dict[int, uuid.UUID],
        batch: list[MatchResult],
        stats: ProcessingStats,
    ) -> None:
        """Write one batch of match results and the running stats in one transaction."""
        async with self.session_factory() as session:
            await session.execute(
                update(StatementRowRecord),
                [_match_values(row_ids[r.row_number], r) for r in batch],
            )
            await session.execute(
                update(Statement)
                .where(Statement.id == stmt_uuid)
                .values(stats_json=stats.model_dump(mode="json"))
            )
            await session.commit()

    async def _update_statement(self, stmt_uuid: uuid.UUID, **values) -> None:
        async with self.session_factory() as session:
            await session.execute(update(Statement).where(Statement.id == stmt_uuid).values(**values))
            await session.commit()

    async def _fail_statement(
        self, stmt_uuid: uuid.UUID, error: ProcessingError, stats: ProcessingStats
    ) -> None:
        """Mark the statement failed, keeping rows and stats persisted so far."""
        statements_failed_total.labels(error_code=error.error_code).inc()
        logger.error("statement_failed", error_code=error.error_code, error=error.message)
        stats.ended_at = _now()
        try:
            await self._update_statement(
                stmt_uuid,
                status=StatementStatus.FAILED.value,
                error_message=error.message[:1000],
                processing_completed_at=stats.ended_at,
                stats_json=stats.model_dump(mode="json"),
            )
        except SQLAlchemyError:
            logger.error("failed_to_mark_failure", statement_id=str(stmt_uuid))

    # ─── Queries ──────────────────────────────────────────────

    async def get_statement(self, statement_id: str) -> Optional[StatementInfo]:
        async with self.session_factory() as session:
            record = await session.get(Statement, uuid.UUID(statement_id))
            return to_statement_info(record) if record else None

    async def list_statements(
        self,
        tenant_id: Optional[str] = None,
        status: Optional[str] = None,
        source: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[StatementInfo], int]:
        """Newest first, plus the unpaged total."""
        filters = []
        if tenant_id:
            filters.append(Statement.tenant_id == tenant_id)
        if status:
            filters.append(Statement.status == status)
        if source:
            filters.append(Statement.source == source)

        async with self.session_factory() as session:
            total = await session.scalar(select(func.count(Statement.id)).where(*filters))
            result = await session.execute(
                select(Statement)
                .where(*filters)
                .order_by(Statement.created_at.desc(), Statement.id)
                .offset(offset)
                .limit(limit)
            )
            return [to_statement_info(r) for r in result.scalars().all()], int(total or 0)

    async def get_statement_rows(
        self,
        statement_id: str,
        match_status: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[StatementRow], int]:
        """Rows in file order, optionally filtered by match status, plus the unpaged total."""
        filters = [StatementRowRecord.statement_id == uuid.UUID(statement_id)]
        if match_status:
            filters.append(StatementRowRecord.match_status == match_status)

        async with self.session_factory() as session:
            total = await session.scalar(
                select(func.count(StatementRowRecord.id)).where(*filters)
            )
            result = await session.execute(
                select(StatementRowRecord)
                .where(*filters)
                .order_by(StatementRowRecord.row_number)
                .offset(offset)
                .limit(limit)
            )
            rows = [
                StatementRow.model_validate(r, from_attributes=True)
                for r in result.scalars().all()
            ]
            return rows, int(total or 0)

    # ─── Distribution ─────────────────────────────────────────

    async def calculate_distributions(self, statement_id: str) -> DistributionResult:
        """Recalculate a statement's distributions from its current row state."""
        async with self.session_factory() as session:
            statement = await session.get(Statement, uuid.UUID(statement_id))
            if statement is None:
                raise ProcessingError(
                    f"Statement {statement_id} not found", "ERR_STATEMENT_NOT_FOUND"
                )
            ctx = await self.cache.get(statement.tenant_id, statement_id)
            result = await calculate_statement_distributions(
                session, statement_id, ctx.snapshot, self.calculator
            )
            await session.commit()
        return result
