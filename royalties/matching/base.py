"""
Abstract interfaces for the pluggable matching stages.

Candidate sources return an explicit StageResult instead of raising: the
engine decides what a failed stage means for the row. Collaborators behind a
source (embedders, vector indices, rerankers) raise StageError and the
source converts it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Union

from royalties.schemas.statements import MatchCandidate, RerankedCandidate, StatementRow, VectorHit

if TYPE_CHECKING:
    from royalties.matching.catalog_cache import ProcessingContext


@dataclass(frozen=True)
class StageSuccess:
    candidates: list[MatchCandidate] = field(default_factory=list)


@dataclass(frozen=True)
class StageFailure:
    stage: str
    error: str


StageResult = Union[StageSuccess, StageFailure]


class CandidateSource(ABC):
    """
    A matching stage that proposes candidate works for one row.

    Implementations must:
    1. Return StageSuccess with zero or more candidates
    2. Return StageFailure when a collaborator is unavailable (never raise)
    3. Report whether they are configured via `enabled`
    """

    @property
    @abstractmethod
    def stage_name(self) -> str:
        """Short identifier used in logs, metrics and stage_errors."""
        ...

    @property
    def enabled(self) -> bool:
        return True

    @abstractmethod
    async def find_candidates(self, row: StatementRow, ctx: "ProcessingContext") -> StageResult:
        ...


class Reranker(ABC):
    """Reorders candidates with full row context. Raises StageError on failure."""

    @property
    def enabled(self) -> bool:
        return True

    @abstractmethod
    async def rerank(
        self, row: StatementRow, candidates: list[MatchCandidate]
    ) -> list[RerankedCandidate]:
        ...


class Embedder(ABC):
    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        ...


class VectorIndex(ABC):
    @abstractmethod
    async def nearest_works(
        self, tenant_id: str, vector: list[float], top_k: int, min_similarity: float
    ) -> list[VectorHit]:
        ...


class StageError(Exception):
    """Raised by a matching collaborator that could not serve a request."""

    def __init__(self, stage: str, message: str):
        self.stage = stage
        self.message = message
        super().__init__(f"[{stage}] {message}")
