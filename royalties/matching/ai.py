"""
OpenAI-backed embedder and reranker.

Both raise StageError on any client or response problem; the matching
engine absorbs it for the affected row and keeps the prior candidates.
"""

import json
from typing import Optional

import openai
import structlog
from openai import AsyncOpenAI

from royalties.config import settings
from royalties.matching.base import Embedder, Reranker, StageError
from royalties.schemas.statements import MatchCandidate, RerankedCandidate, StatementRow

logger = structlog.get_logger(__name__)

RERANK_SYSTEM_PROMPT = """You are an expert music publishing analyst. Rank catalog work candidates by how well they match a royalty statement line. Consider:
- Title similarity, including alternate titles and translations
- Writer and composer name variations
- Context clues from the performer or statement source

Respond with JSON only."""


def build_client() -> AsyncOpenAI:
    return AsyncOpenAI(
        api_key=settings.OPENAI_API_KEY,
        base_url=settings.OPENAI_BASE_URL,
        timeout=settings.RERANK_TIMEOUT_SECONDS,
    )


class OpenAIEmbedder(Embedder):
    def __init__(self, client: Optional[AsyncOpenAI] = None, model: Optional[str] = None):
        self.client = client or build_client()
        self.model = model or settings.EMBEDDING_MODEL

    async def embed(self, text: str) -> list[float]:
        try:
            response = await self.client.embeddings.create(model=self.model, input=[text])
        except openai.OpenAIError as e:
            raise StageError("semantic", f"embedding request failed: {e}") from e
        if not response.data:
            raise StageError("semantic", "embedding response contained no vectors")
        return list(response.data[0].embedding)


def build_rerank_prompt(
    row: StatementRow, candidates: list[MatchCandidate], source: Optional[str] = None
) -> str:
    lines = ["## Royalty Statement Line", f"Title: {row.work_title or ''}"]
    if row.writer_display:
        lines.append(f"Writers: {row.writer_display}")
    if row.performer_name:
        lines.append(f"Performers: {row.performer_name}")
    if source:
        lines.append(f"Source: {source}")
    if row.amount:
        lines.append(f"Amount: {row.amount}")

    lines += ["", "## Candidate Works"]
    for i, c in enumerate(candidates, start=1):
        lines.append(f"{i}. ID: {c.work_id}")
        lines.append(f"   Title: {c.title}")
        if c.iswc:
            lines.append(f"   ISWC: {c.iswc}")
        lines.append(f"   Writers: {', '.join(c.writers) or 'Unknown'}")
        lines.append(f"   Current Score: {c.score * 100:.1f}%")

    lines += [
        "",
        "## Task",
        "Rank these candidates from best to worst match. Return JSON:",
        '{"rankings": [{"workId": "...", "confidence": 0.95, "reasoning": "..."}]}',
    ]
    return "\n".join(lines)


def parse_rankings(content: str) -> list[RerankedCandidate]:
    try:
        payload = json.loads(content)
    except json.JSONDecodeError as e:
        raise StageError("rerank", f"invalid JSON from reranker: {e}") from e

    rankings = payload.get("rankings") if isinstance(payload, dict) else None
    if not isinstance(rankings, list):
        raise StageError("rerank", "reranker response has no rankings list")

    out = []
    for item in rankings:
        if not isinstance(item, dict) or "workId" not in item:
            continue
        try:
            confidence = float(item.get("confidence", 0.0))
        except (TypeError, ValueError):
            continue
        out.append(
            RerankedCandidate(
                work_id=str(item["workId"]),
                confidence=min(max(confidence, 0.0), 1.0),
                reasoning=str(item.get("reasoning") or ""),
            )
        )
    return out


class OpenAIReranker(Reranker):
    """Chat-completion reranker returning {"rankings": [...]} JSON."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: Optional[str] = None,
        source: Optional[str] = None,
    ):
        self.client = client or build_client()
        self.model = model or settings.RERANK_MODEL
        self.source = source

    async def rerank(
        self, row: StatementRow, candidates: list[MatchCandidate]
    ) -> list[RerankedCandidate]:
        prompt = build_rerank_prompt(row, candidates, self.source)
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": RERANK_SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
                response_format={"type": "json_object"},
                temperature=0.1,
                max_tokens=1000,
            )
        except openai.OpenAIError as e:
            raise StageError("rerank", f"rerank request failed: {e}") from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise StageError("rerank", "empty reranker response")

        rankings = parse_rankings(content)
        logger.debug(
            "rerank_completed",
            row_number=row.row_number,
            candidates=len(candidates),
            ranked=len(rankings),
        )
        return rankings
