"""
Statement, matching and processing result schemas.
These are the shapes passed between the parser, matcher, review queue,
distribution calculator and processor, and returned to callers.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel

from royalties.models.enums import (
    JobState,
    MatchMethod,
    MatchStatus,
    Recommendation,
    ReviewAction,
    ReviewStatus,
)


class StatementRow(BaseModel):
    """One normalized statement line."""
    row_number: int
    raw_data: dict[str, Any] = {}

    work_title: Optional[str] = None
    writer_name: Optional[str] = None
    writer_first_name: Optional[str] = None
    writer_last_name: Optional[str] = None
    performer_name: Optional[str] = None
    isrc: Optional[str] = None
    iswc: Optional[str] = None
    work_code: Optional[str] = None
    publisher_code: Optional[str] = None

    amount: Decimal = Decimal("0")
    currency: Optional[str] = None
    right_type: Optional[str] = None        # performance, mechanical, sync, print, other
    usage_type: Optional[str] = None        # streaming, download, broadcast, live, background
    usage_count: Optional[int] = None
    territory: Optional[str] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None

    match_status: MatchStatus = MatchStatus.PENDING
    matched_work_id: Optional[str] = None
    match_confidence: Optional[float] = None
    match_method: Optional[MatchMethod] = None

    @property
    def writer_display(self) -> Optional[str]:
        """Writer as a single string, from the combined or split name columns."""
        if self.writer_name:
            return self.writer_name
        parts = [p for p in (self.writer_first_name, self.writer_last_name) if p]
        return " ".join(parts) if parts else None


# ── Matching ────────────────────────────────────────────────
class MatchCandidate(BaseModel):
    work_id: str
    work_code: str
    title: str
    iswc: Optional[str] = None
    writers: list[str] = []
    score: float
    method: MatchMethod
    explanation: list[str] = []


class StageErrorRecord(BaseModel):
    """A collaborator failure absorbed while matching one row."""
    stage: str
    message: str


class MatchResult(BaseModel):
    row_number: int
    status: MatchStatus
    confidence: float = 0.0
    matched_work_id: Optional[str] = None
    method: Optional[MatchMethod] = None
    candidates: list[MatchCandidate] = []
    recommendation: Recommendation = Recommendation.NO_MATCH
    processing_time_ms: float = 0.0
    stage_errors: list[StageErrorRecord] = []
    warnings: list[str] = []

    @property
    def best_candidate(self) -> Optional[MatchCandidate]:
        return self.candidates[0] if self.candidates else None


class VectorHit(BaseModel):
    work_id: str
    similarity: float


class RerankedCandidate(BaseModel):
    work_id: str
    confidence: float
    reasoning: str = ""


# ── Processing ──────────────────────────────────────────────
class ProcessingStats(BaseModel):
    total_rows: int = 0
    processed_rows: int = 0
    exact_matches: int = 0
    fuzzy_matches: int = 0
    no_matches: int = 0
    review_required: int = 0
    errors: int = 0
    average_match_time_ms: float = 0.0
    total_amount: Decimal = Decimal("0")
    matched_amount: Decimal = Decimal("0")
    unmatched_amount: Decimal = Decimal("0")
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


class ProcessingOptions(BaseModel):
    auto_distribute: bool = False
    column_mappings: Optional[dict[str, str]] = None


class StatementMetadata(BaseModel):
    """Caller-supplied metadata for an upload."""
    source: str = "CUSTOM"
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    currency: Optional[str] = None


class ParseResult(BaseModel):
    rows: list[StatementRow] = []
    headers: list[str] = []
    format: str = "csv"
    errors: list[str] = []
    warnings: list[str] = []


# ── Distribution ────────────────────────────────────────────
class DistributionLine(BaseModel):
    """One computed payable line before persistence."""
    work_id: str
    writer_id: Optional[str] = None
    publisher_id: Optional[str] = None
    gross_amount: Decimal
    share_percentage: Decimal
    net_amount: Decimal
    adjustment: Decimal = Decimal("0")
    right_type: str
    usage_type: Optional[str] = None
    territory: Optional[str] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    source_row_numbers: list[int] = []
    currency: str = "USD"


class PartyTotal(BaseModel):
    party_id: str
    name: str
    amount: Decimal
    percentage: float


class RoundingAdjustment(BaseModel):
    work_id: str
    right_type: str
    party_id: str
    amount: Decimal


class DistributionSummary(BaseModel):
    total_gross: Decimal = Decimal("0")
    total_distributed: Decimal = Decimal("0")
    total_undistributed: Decimal = Decimal("0")
    match_rate: float = 0.0
    by_right_type: dict[str, Decimal] = {}
    by_writer: list[PartyTotal] = []
    by_publisher: list[PartyTotal] = []
    rounding_adjustments: list[RoundingAdjustment] = []
    warnings: list[str] = []


class DistributionResult(BaseModel):
    lines: list[DistributionLine] = []
    summary: DistributionSummary = DistributionSummary()


class StatementInfo(BaseModel):
    """A statement record as returned to callers."""
    id: str
    tenant_id: str
    filename: str
    format: str
    source: str
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    currency: str
    total_amount: Decimal
    row_count: int
    status: str
    uploaded_by: Optional[str] = None
    processing_started_at: Optional[datetime] = None
    processing_completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    stats: Optional[dict[str, Any]] = None
    created_at: Optional[datetime] = None


class ProcessingResult(BaseModel):
    statement_id: str
    status: str
    stats: ProcessingStats
    distribution: Optional[DistributionSummary] = None
    errors: list[str] = []
    warnings: list[str] = []


# ── Review ──────────────────────────────────────────────────
class ReviewResolution(BaseModel):
    action: ReviewAction
    matched_work_id: Optional[str] = None
    confidence: Optional[float] = None
    notes: Optional[str] = None


class ReviewItem(BaseModel):
    id: str
    statement_id: str
    row_number: int
    statement_row: dict[str, Any]
    match_result: dict[str, Any]
    priority: int
    status: ReviewStatus
    assigned_to: Optional[str] = None
    resolution: Optional[ReviewResolution] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


# ── Jobs ────────────────────────────────────────────────────
class JobStatus(BaseModel):
    job_id: str
    state: JobState
    progress: float = 0.0
    result: Optional[dict] = None
    failed_reason: Optional[str] = None
