"""
Python enums for persisted royalty state.
Values are the strings stored in the database columns.
"""

from enum import Enum


class StatementStatus(str, Enum):
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    MATCHING = "matching"
    REVIEW = "review"
    COMPLETED = "completed"
    FAILED = "failed"


class StatementFormat(str, Enum):
    CSV = "csv"
    TSV = "tsv"
    JSON = "json"


class MatchStatus(str, Enum):
    PENDING = "pending"
    EXACT = "exact"
    FUZZY_HIGH = "fuzzy_high"
    FUZZY_MEDIUM = "fuzzy_medium"
    FUZZY_LOW = "fuzzy_low"
    NO_MATCH = "no_match"
    MANUAL = "manual"
    REJECTED = "rejected"


# Statuses whose rows are paid out
CONFIDENT_MATCH_STATUSES = (MatchStatus.EXACT, MatchStatus.FUZZY_HIGH, MatchStatus.MANUAL)

# Statuses whose rows go to the review queue
REVIEW_MATCH_STATUSES = (MatchStatus.FUZZY_MEDIUM, MatchStatus.FUZZY_LOW)


class MatchMethod(str, Enum):
    ISWC = "iswc"
    ISRC = "isrc"
    WORK_CODE = "work_code"
    TITLE_WRITER = "title_writer"
    VECTOR_SIMILARITY = "vector_similarity"
    LLM_RERANK = "llm_rerank"
    MANUAL = "manual"


class Recommendation(str, Enum):
    AUTO_MATCH = "auto_match"
    REVIEW = "review"
    CREATE_NEW = "create_new"      # plausible candidates only, likely an uncatalogued work
    NO_MATCH = "no_match"


class ReviewStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SKIPPED = "skipped"


class ReviewAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    REMATCH = "rematch"
    SKIP = "skip"


class RightType(str, Enum):
    PERFORMANCE = "performance"
    MECHANICAL = "mechanical"
    SYNC = "sync"
    PRINT = "print"
    OTHER = "other"


class UsageType(str, Enum):
    STREAMING = "streaming"
    DOWNLOAD = "download"
    BROADCAST = "broadcast"
    LIVE = "live"
    BACKGROUND = "background"
    OTHER = "other"


class DistributionStatus(str, Enum):
    CALCULATED = "calculated"
    APPROVED = "approved"
    PROCESSING = "processing"
    PAID = "paid"
    HELD = "held"
    DISPUTED = "disputed"


class JobState(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    NOT_FOUND = "not_found"
