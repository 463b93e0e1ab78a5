"""
Multi-stage matching engine.

Stages per row, each only if no exact match was found:
EXACT (ISWC → ISRC → work code) → FUZZY → SEMANTIC → RERANK

The engine owns the status/recommendation decision. Candidate sources and
the reranker only propose and reorder.
"""

import asyncio
import inspect
import time
from typing import Awaitable, Callable, Iterable, Optional, Union

import structlog
from pydantic import BaseModel, model_validator

from royalties.config import settings
from royalties.matching.base import (
    CandidateSource,
    Reranker,
    StageFailure,
    StageResult,
    StageSuccess,
)
from royalties.matching.catalog_cache import CatalogSnapshot, ProcessingContext
from royalties.matching.normalize import normalize_identifier
from royalties.matching.stages import (
    FuzzyCandidateSource,
    NullCandidateSource,
    NullReranker,
    blend_rerank,
    make_candidate,
    merge_candidates,
)
from royalties.models.enums import (
    REVIEW_MATCH_STATUSES,
    MatchMethod,
    MatchStatus,
    Recommendation,
)
from royalties.observability.metrics import (
    match_duration_seconds,
    match_stage_failures_total,
    rows_matched_total,
)
from royalties.schemas.statements import (
    MatchCandidate,
    MatchResult,
    ProcessingStats,
    StageErrorRecord,
    StatementRow,
)

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[int, int], Union[None, Awaitable[None]]]

FUZZY_STATUSES = (MatchStatus.FUZZY_HIGH, MatchStatus.FUZZY_MEDIUM, MatchStatus.FUZZY_LOW)


class MatchingConfig(BaseModel):
    auto_match_threshold: float = 0.95
    review_threshold: float = 0.70
    minimum_threshold: float = 0.30
    batch_size: int = 100
    concurrency: int = 5
    fuzzy_top_k: int = 20
    final_top_k: int = 10
    rerank_top_k: int = 10
    rerank_prior_weight: float = 0.4
    rerank_omitted_penalty: float = 0.5
    rerank_timeout_seconds: float = 30.0

    @model_validator(mode="after")
    def _check_thresholds(self):
        if not (0.0 <= self.minimum_threshold <= self.review_threshold <= self.auto_match_threshold <= 1.0):
            raise ValueError(
                "thresholds must satisfy 0 <= minimum <= review <= auto_match <= 1, got "
                f"minimum={self.minimum_threshold} review={self.review_threshold} "
                f"auto_match={self.auto_match_threshold}"
            )
        if not 0.0 <= self.rerank_prior_weight <= 1.0:
            raise ValueError("rerank_prior_weight must be within [0, 1]")
        if self.batch_size < 1 or self.concurrency < 1:
            raise ValueError("batch_size and concurrency must be positive")
        return self

    @classmethod
    def from_settings(cls) -> "MatchingConfig":
        return cls(
            auto_match_threshold=settings.MATCH_AUTO_THRESHOLD,
            review_threshold=settings.MATCH_REVIEW_THRESHOLD,
            minimum_threshold=settings.MATCH_MINIMUM_THRESHOLD,
            batch_size=settings.MATCH_BATCH_SIZE,
            concurrency=settings.MATCH_CONCURRENCY,
            fuzzy_top_k=settings.MATCH_FUZZY_TOP_K,
            final_top_k=settings.MATCH_FINAL_TOP_K,
            rerank_top_k=settings.RERANK_TOP_K,
            rerank_prior_weight=settings.RERANK_PRIOR_WEIGHT,
            rerank_omitted_penalty=settings.RERANK_OMITTED_PENALTY,
            rerank_timeout_seconds=settings.RERANK_TIMEOUT_SECONDS,
        )

    def classify(self, score: float) -> tuple[MatchStatus, Recommendation]:
        """Map a best-candidate score to (status, recommendation)."""
        if score >= self.auto_match_threshold:
            return MatchStatus.FUZZY_HIGH, Recommendation.AUTO_MATCH
        if score >= self.review_threshold:
            return MatchStatus.FUZZY_MEDIUM, Recommendation.REVIEW
        if score >= self.minimum_threshold:
            return MatchStatus.FUZZY_LOW, Recommendation.CREATE_NEW
        return MatchStatus.NO_MATCH, Recommendation.NO_MATCH


class MatchingEngine:
    """
    Matches statement rows against a catalog snapshot.
    Stateless between rows; one instance can serve many statements.
    """

    def __init__(
        self,
        config: Optional[MatchingConfig] = None,
        fuzzy_source: Optional[CandidateSource] = None,
        semantic_source: Optional[CandidateSource] = None,
        reranker: Optional[Reranker] = None,
    ):
        self.config = config or MatchingConfig.from_settings()
        self.fuzzy_source = fuzzy_source or FuzzyCandidateSource(
            minimum_threshold=self.config.minimum_threshold,
            top_k=self.config.fuzzy_top_k,
        )
        self.semantic_source = semantic_source or NullCandidateSource("semantic")
        self.reranker = reranker or NullReranker()

    @property
    def candidate_sources(self) -> list[CandidateSource]:
        return [self.fuzzy_source, self.semantic_source]

    # ── Single row ──────────────────────────────────────────
    async def match_row(self, row: StatementRow, ctx: ProcessingContext) -> MatchResult:
        started = time.perf_counter()
        warnings: list[str] = []

        exact = self._exact_match(row, ctx.snapshot, warnings)
        if exact is not None:
            return self._finish(
                MatchResult(
                    row_number=row.row_number,
                    status=MatchStatus.EXACT,
                    confidence=1.0,
                    matched_work_id=exact.work_id,
                    method=exact.method,
                    candidates=[exact],
                    recommendation=Recommendation.AUTO_MATCH,
                    warnings=warnings,
                ),
                started,
            )

        stage_errors: list[StageErrorRecord] = []
        candidates: list[MatchCandidate] = []

        for source in self.candidate_sources:
            if not source.enabled:
                continue
            outcome = await source.find_candidates(row, ctx)
            if isinstance(outcome, StageFailure):
                self._record_failure(row, outcome, stage_errors)
                continue
            candidates = merge_candidates(candidates, outcome.candidates)

        if len(candidates) > 1 and self.reranker.enabled:
            outcome = await self._rerank(row, candidates)
            if isinstance(outcome, StageFailure):
                self._record_failure(row, outcome, stage_errors)
            else:
                candidates = outcome.candidates

        return self._finish(self._decide(row, candidates, stage_errors, warnings), started)

    def _exact_match(
        self, row: StatementRow, snapshot: CatalogSnapshot, warnings: list[str]
    ) -> Optional[MatchCandidate]:
        iswc = normalize_identifier(row.iswc)
        if iswc and iswc in snapshot.iswc_index:
            work = snapshot.works[snapshot.iswc_index[iswc]]
            return make_candidate(work, 1.0, MatchMethod.ISWC, f"Exact ISWC match: {row.iswc}")

        isrc = normalize_identifier(row.isrc)
        if isrc:
            work_ids = snapshot.isrc_index.get(isrc, ())
            if len(work_ids) == 1:
                work = snapshot.works[work_ids[0]]
                return make_candidate(work, 1.0, MatchMethod.ISRC, f"Exact ISRC match: {row.isrc}")
            if len(work_ids) > 1:
                warnings.append(
                    f"Row {row.row_number}: ISRC {row.isrc} maps to {len(work_ids)} works; "
                    "not auto-resolving"
                )
                logger.warning(
                    "ambiguous_isrc",
                    row_number=row.row_number,
                    isrc=row.isrc,
                    work_count=len(work_ids),
                )

        code = normalize_identifier(row.work_code)
        if code and code in snapshot.work_code_index:
            work = snapshot.works[snapshot.work_code_index[code]]
            return make_candidate(
                work, 1.0, MatchMethod.WORK_CODE, f"Exact work code match: {row.work_code}"
            )
        return None

    async def _rerank(self, row: StatementRow, candidates: list[MatchCandidate]) -> StageResult:
        top = candidates[: self.config.rerank_top_k]
        rest = candidates[self.config.rerank_top_k:]
        try:
            rankings = await asyncio.wait_for(
                self.reranker.rerank(row, top), timeout=self.config.rerank_timeout_seconds
            )
        except asyncio.TimeoutError:
            return StageFailure(stage="rerank", error="reranker timed out")
        except Exception as e:
            return StageFailure(stage="rerank", error=str(e) or type(e).__name__)

        if not rankings:
            return StageFailure(stage="rerank", error="reranker returned no rankings")

        blended = blend_rerank(
            top,
            rankings,
            prior_weight=self.config.rerank_prior_weight,
            omitted_penalty=self.config.rerank_omitted_penalty,
        )
        return StageSuccess(sorted(blended + rest, key=lambda c: c.score, reverse=True))

    def _record_failure(
        self, row: StatementRow, failure: StageFailure, stage_errors: list[StageErrorRecord]
    ) -> None:
        stage_errors.append(StageErrorRecord(stage=failure.stage, message=failure.error))
        match_stage_failures_total.labels(stage=failure.stage).inc()
        logger.warning(
            "match_stage_failed",
            row_number=row.row_number,
            stage=failure.stage,
            error=failure.error,
        )

    def _decide(
        self,
        row: StatementRow,
        candidates: list[MatchCandidate],
        stage_errors: list[StageErrorRecord],
        warnings: list[str],
    ) -> MatchResult:
        if not candidates:
            return MatchResult(
                row_number=row.row_number,
                status=MatchStatus.NO_MATCH,
                confidence=0.0,
                recommendation=Recommendation.NO_MATCH,
                stage_errors=stage_errors,
                warnings=warnings,
            )

        best = candidates[0]
        status, recommendation = self.config.classify(best.score)
        return MatchResult(
            row_number=row.row_number,
            status=status,
            confidence=best.score,
            matched_work_id=best.work_id if status == MatchStatus.FUZZY_HIGH else None,
            method=best.method,
            candidates=candidates[: self.config.final_top_k],
            recommendation=recommendation,
            stage_errors=stage_errors,
            warnings=warnings,
        )

    def _finish(self, result: MatchResult, started: float) -> MatchResult:
        elapsed = time.perf_counter() - started
        result.processing_time_ms = round(elapsed * 1000, 3)
        rows_matched_total.labels(status=result.status.value).inc()
        match_duration_seconds.observe(elapsed)
        return result

    # ── Batches ─────────────────────────────────────────────
    async def iter_batches(self, rows: Iterable[StatementRow], ctx: ProcessingContext):
        """
        Yield match results one batch at a time, in row-number order.
        At most `concurrency` rows are in flight; ctx.stats is current after
        every yielded batch.
        """
        ordered = sorted(rows, key=lambda r: r.row_number)
        semaphore = asyncio.Semaphore(self.config.concurrency)
        done: list[MatchResult] = []

        async def run(row: StatementRow) -> MatchResult:
            async with semaphore:
                return await self.match_row(row, ctx)

        ctx.stats.total_rows = ctx.stats.total_rows or len(ordered)
        for start in range(0, len(ordered), self.config.batch_size):
            batch = ordered[start:start + self.config.batch_size]
            results = await asyncio.gather(*(run(r) for r in batch))
            done.extend(results)
            update_stats(ctx.stats, done)
            yield list(results)

    async def match_batch(
        self,
        rows: Iterable[StatementRow],
        ctx: ProcessingContext,
        on_progress: Optional[ProgressCallback] = None,
    ) -> list[MatchResult]:
        rows = list(rows)
        results: list[MatchResult] = []
        async for batch in self.iter_batches(rows, ctx):
            results.extend(batch)
            if on_progress is not None:
                maybe = on_progress(len(results), len(rows))
                if inspect.isawaitable(maybe):
                    await maybe
        return results


def update_stats(stats: ProcessingStats, results: list[MatchResult]) -> None:
    """Recompute running counters from every result so far."""
    stats.processed_rows = len(results)
    stats.exact_matches = sum(1 for r in results if r.status == MatchStatus.EXACT)
    stats.fuzzy_matches = sum(1 for r in results if r.status in FUZZY_STATUSES)
    stats.no_matches = sum(1 for r in results if r.status == MatchStatus.NO_MATCH)
    stats.review_required = sum(1 for r in results if r.status in REVIEW_MATCH_STATUSES)
    if results:
        stats.average_match_time_ms = round(
            sum(r.processing_time_ms for r in results) / len(results), 3
        )
