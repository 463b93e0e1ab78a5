"""
Candidate sources and rerank blending.

FuzzyCandidateSource scans the in-memory snapshot. A trigram or phonetic
index can replace it behind the same CandidateSource interface.
"""

from typing import TYPE_CHECKING, Optional

import numpy as np

from royalties.matching.base import (
    CandidateSource,
    Embedder,
    Reranker,
    StageFailure,
    StageResult,
    StageSuccess,
    VectorIndex,
)
from royalties.matching.normalize import normalize_title, title_similarity, writer_similarity
from royalties.models.enums import MatchMethod
from royalties.schemas.catalog import CatalogWork
from royalties.schemas.statements import (
    MatchCandidate,
    RerankedCandidate,
    StatementRow,
    VectorHit,
)

if TYPE_CHECKING:
    from royalties.matching.catalog_cache import CatalogCache, ProcessingContext

TITLE_WEIGHT = 0.6
WRITER_WEIGHT = 0.4


def make_candidate(
    work: CatalogWork, score: float, method: MatchMethod, explanation: Optional[str] = None
) -> MatchCandidate:
    return MatchCandidate(
        work_id=work.id,
        work_code=work.work_code,
        title=work.title,
        iswc=work.iswc,
        writers=work.writer_names,
        score=round(min(max(score, 0.0), 1.0), 6),
        method=method,
        explanation=[explanation] if explanation else [],
    )


def merge_candidates(
    existing: list[MatchCandidate], incoming: list[MatchCandidate]
) -> list[MatchCandidate]:
    """Deduplicate by work id: keep the max score, concatenate evidence."""
    merged: dict[str, MatchCandidate] = {c.work_id: c for c in existing}
    for cand in incoming:
        current = merged.get(cand.work_id)
        if current is None:
            merged[cand.work_id] = cand
            continue
        best = cand if cand.score > current.score else current
        merged[cand.work_id] = best.model_copy(
            update={"explanation": current.explanation + cand.explanation}
        )
    return sorted(merged.values(), key=lambda c: c.score, reverse=True)


def blend_rerank(
    candidates: list[MatchCandidate],
    rankings: list[RerankedCandidate],
    prior_weight: float,
    omitted_penalty: float,
) -> list[MatchCandidate]:
    """
    Combine reranker confidence with the prior score.
    blended = prior_weight * prior + (1 - prior_weight) * confidence;
    candidates the reranker left out are scaled by omitted_penalty.
    """
    by_id = {c.work_id: c for c in candidates}
    seen: set[str] = set()
    out: list[MatchCandidate] = []

    for ranking in rankings:
        cand = by_id.get(ranking.work_id)
        if cand is None or ranking.work_id in seen:
            continue
        seen.add(ranking.work_id)
        confidence = min(max(ranking.confidence, 0.0), 1.0)
        blended = prior_weight * cand.score + (1 - prior_weight) * confidence
        evidence = f"Rerank: {confidence:.0%}" + (f" ({ranking.reasoning})" if ranking.reasoning else "")
        out.append(
            cand.model_copy(
                update={
                    "score": round(blended, 6),
                    "method": MatchMethod.LLM_RERANK,
                    "explanation": cand.explanation + [evidence],
                }
            )
        )

    for cand in candidates:
        if cand.work_id not in seen:
            out.append(cand.model_copy(update={"score": round(cand.score * omitted_penalty, 6)}))

    return sorted(out, key=lambda c: c.score, reverse=True)


# ── Fuzzy ────────────────────────────────────────────────────
class FuzzyCandidateSource(CandidateSource):
    """Linear scan of the snapshot scoring title and writer similarity."""

    def __init__(self, minimum_threshold: float, top_k: int):
        self.minimum_threshold = minimum_threshold
        self.top_k = top_k

    @property
    def stage_name(self) -> str:
        return "fuzzy"

    async def find_candidates(self, row: StatementRow, ctx: "ProcessingContext") -> StageResult:
        title = normalize_title(row.work_title)
        if not title:
            return StageSuccess([])

        writer = row.writer_display
        scored: list[MatchCandidate] = []
        for work in ctx.snapshot.works.values():
            score, explanation = score_work(title, writer, work)
            if score >= self.minimum_threshold:
                scored.append(make_candidate(work, score, MatchMethod.TITLE_WRITER, explanation))

        scored.sort(key=lambda c: c.score, reverse=True)
        return StageSuccess(scored[: self.top_k])


def score_work(title: str, writer: Optional[str], work: CatalogWork) -> tuple[float, str]:
    """Combined fuzzy score of one work against a normalized title and raw writer."""
    title_sim = title_similarity(title, work.normalized_title)
    for alt in work.normalized_alternate_titles:
        if title_sim >= 1.0:
            break
        title_sim = max(title_sim, title_similarity(title, alt))

    if not writer:
        return title_sim, f"Title {title_sim:.0%}"

    writer_sim = max(
        (writer_similarity(writer, w.full_name, w.first_name, w.last_name) for w in work.writers),
        default=0.0,
    )
    score = TITLE_WEIGHT * title_sim + WRITER_WEIGHT * writer_sim
    return score, f"Title {title_sim:.0%}, writer {writer_sim:.0%}"


# ── Semantic ─────────────────────────────────────────────────
def composite_text(row: StatementRow) -> str:
    """Title, writers and performers joined for embedding."""
    parts = [row.work_title, row.writer_display, row.performer_name]
    return " ".join(p.strip() for p in parts if p and p.strip())


class SemanticCandidateSource(CandidateSource):
    """Nearest-neighbour candidates over catalog embeddings."""

    def __init__(self, embedder: Embedder, index: VectorIndex, top_k: int, min_similarity: float):
        self.embedder = embedder
        self.index = index
        self.top_k = top_k
        self.min_similarity = min_similarity

    @property
    def stage_name(self) -> str:
        return "semantic"

    async def find_candidates(self, row: StatementRow, ctx: "ProcessingContext") -> StageResult:
        if not ctx.snapshot.embeddings_ready:
            return StageSuccess([])
        text = composite_text(row)
        if not text:
            return StageSuccess([])

        try:
            vector = await self.embedder.embed(text)
            hits = await self.index.nearest_works(
                ctx.tenant_id, vector, self.top_k, self.min_similarity
            )
        except Exception as e:
            return StageFailure(stage=self.stage_name, error=str(e) or type(e).__name__)

        candidates = []
        for hit in hits:
            work = ctx.snapshot.get_work(hit.work_id)
            if work is None:
                continue
            candidates.append(
                make_candidate(
                    work,
                    hit.similarity,
                    MatchMethod.VECTOR_SIMILARITY,
                    f"Semantic similarity {hit.similarity:.0%}",
                )
            )
        return StageSuccess(candidates)


class NullCandidateSource(CandidateSource):
    """Stand-in for an unconfigured stage."""

    def __init__(self, stage_name: str = "semantic"):
        self._stage_name = stage_name

    @property
    def stage_name(self) -> str:
        return self._stage_name

    @property
    def enabled(self) -> bool:
        return False

    async def find_candidates(self, row: StatementRow, ctx: "ProcessingContext") -> StageResult:
        return StageSuccess([])


class NullReranker(Reranker):
    @property
    def enabled(self) -> bool:
        return False

    async def rerank(
        self, row: StatementRow, candidates: list[MatchCandidate]
    ) -> list[RerankedCandidate]:
        return []


# ── Vector index ─────────────────────────────────────────────
class InMemoryVectorIndex(VectorIndex):
    """
    Cosine similarity over the embeddings held in the cached snapshot.
    The embedding matrix is built once per snapshot.
    """

    def __init__(self, cache: "CatalogCache"):
        self.cache = cache
        self._matrices: dict[str, tuple[object, list[str], np.ndarray]] = {}

    async def nearest_works(
        self, tenant_id: str, vector: list[float], top_k: int, min_similarity: float
    ) -> list[VectorHit]:
        snapshot = self.cache.peek(tenant_id)
        if snapshot is None or not vector:
            return []

        ids, matrix = self._matrix_for(tenant_id, snapshot)
        if not ids:
            return []

        query = np.asarray(vector, dtype=np.float32)
        query_norm = np.linalg.norm(query)
        if query_norm == 0 or matrix.shape[1] != query.shape[0]:
            return []

        sims = matrix @ (query / query_norm)
        order = np.argsort(-sims)[:top_k]
        return [
            VectorHit(work_id=ids[i], similarity=float(sims[i]))
            for i in order
            if sims[i] >= min_similarity
        ]

    def _matrix_for(self, tenant_id: str, snapshot) -> tuple[list[str], np.ndarray]:
        cached = self._matrices.get(tenant_id)
        if cached is not None and cached[0] is snapshot:
            return cached[1], cached[2]

        ids = [w.id for w in snapshot.works.values() if w.embedding]
        if not ids:
            matrix = np.zeros((0, 0), dtype=np.float32)
        else:
            matrix = np.asarray(
                [snapshot.works[i].embedding for i in ids], dtype=np.float32
            )
            norms = np.linalg.norm(matrix, axis=1, keepdims=True)
            norms[norms == 0] = 1.0
            matrix = matrix / norms
        self._matrices[tenant_id] = (snapshot, ids, matrix)
        return ids, matrix
