"""
Tests for the OpenAI embedder and reranker adapters, with a fake client.
"""

import asyncio
import json
from decimal import Decimal
from types import SimpleNamespace

import openai
import pytest

from royalties.matching.ai import (
    OpenAIEmbedder,
    OpenAIReranker,
    build_rerank_prompt,
    parse_rankings,
)
from royalties.matching.base import StageError
from royalties.models.enums import MatchMethod
from royalties.schemas.statements import MatchCandidate, StatementRow


class FakeEndpoint:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error:
            raise self.error
        return self.response


def chat_client(content=None, error=None):
    choices = [SimpleNamespace(message=SimpleNamespace(content=content))] if content is not None else []
    endpoint = FakeEndpoint(SimpleNamespace(choices=choices), error)
    return SimpleNamespace(chat=SimpleNamespace(completions=endpoint)), endpoint


def embedding_client(vectors=None, error=None):
    data = [SimpleNamespace(embedding=v) for v in (vectors or [])]
    endpoint = FakeEndpoint(SimpleNamespace(data=data), error)
    return SimpleNamespace(embeddings=endpoint), endpoint


ROW = StatementRow(
    row_number=7, work_title="Yesterday", writer_name="J. Lennon",
    performer_name="The Beatles", amount=Decimal("12.00"),
)

CANDIDATES = [
    MatchCandidate(work_id="w-yesterday", work_code="BEA001", title="Yesterday",
                   iswc="T0101407391", writers=["John Lennon", "Paul McCartney"],
                   score=0.91, method=MatchMethod.TITLE_WRITER),
    MatchCandidate(work_id="w-help", work_code="BEA003", title="Help!",
                   score=0.35, method=MatchMethod.TITLE_WRITER),
]


class TestPrompt:
    """Test reranker prompt construction."""

    def test_prompt_lists_row_and_candidates(self):
        prompt = build_rerank_prompt(ROW, CANDIDATES, source="BMI")
        assert "Title: Yesterday" in prompt
        assert "Writers: J. Lennon" in prompt
        assert "Performers: The Beatles" in prompt
        assert "Source: BMI" in prompt
        assert "1. ID: w-yesterday" in prompt
        assert "ISWC: T0101407391" in prompt
        assert "Current Score: 91.0%" in prompt
        assert "Writers: Unknown" in prompt


class TestParseRankings:
    """Test reranker response parsing."""

    def test_valid_rankings(self):
        content = json.dumps({"rankings": [
            {"workId": "w-yesterday", "confidence": 0.97, "reasoning": "same title"},
            {"workId": "w-help", "confidence": 1.7},
        ]})
        rankings = parse_rankings(content)
        assert [r.work_id for r in rankings] == ["w-yesterday", "w-help"]
        assert rankings[0].reasoning == "same title"
        # Confidence is clamped into [0, 1]
        assert rankings[1].confidence == 1.0

    def test_malformed_entries_skipped(self):
        content = json.dumps({"rankings": [
            {"confidence": 0.5},
            {"workId": "w-help", "confidence": "high"},
            {"workId": "w-yesterday", "confidence": "0.8"},
        ]})
        assert [(r.work_id, r.confidence) for r in parse_rankings(content)] == [("w-yesterday", 0.8)]

    @pytest.mark.parametrize("content", ["not json", "[]", '{"rankings": "none"}'])
    def test_invalid_payload(self, content):
        with pytest.raises(StageError) as exc:
            parse_rankings(content)
        assert exc.value.stage == "rerank"


class TestOpenAIReranker:
    """Test the chat-completion reranker."""

    def test_rerank_request(self):
        client, endpoint = chat_client(json.dumps(
            {"rankings": [{"workId": "w-yesterday", "confidence": 0.99}]}
        ))
        reranker = OpenAIReranker(client, model="test-model")
        rankings = asyncio.run(reranker.rerank(ROW, CANDIDATES))

        assert rankings[0].work_id == "w-yesterday"
        call = endpoint.calls[0]
        assert call["model"] == "test-model"
        assert call["response_format"] == {"type": "json_object"}
        assert call["messages"][0]["role"] == "system"

    def test_client_error_becomes_stage_error(self):
        client, _ = chat_client(error=openai.OpenAIError("rate limited"))
        with pytest.raises(StageError) as exc:
            asyncio.run(OpenAIReranker(client).rerank(ROW, CANDIDATES))
        assert "rate limited" in exc.value.message

    def test_empty_response(self):
        client, _ = chat_client(content=None)
        with pytest.raises(StageError):
            asyncio.run(OpenAIReranker(client).rerank(ROW, CANDIDATES))


class TestOpenAIEmbedder:
    """Test the embeddings adapter."""

    def test_embed(self):
        client, endpoint = embedding_client([[0.1, 0.2, 0.3]])
        vector = asyncio.run(OpenAIEmbedder(client, model="embed-model").embed("yesterday lennon"))
        assert vector == [0.1, 0.2, 0.3]
        assert endpoint.calls[0] == {"model": "embed-model", "input": ["yesterday lennon"]}

    def test_no_vectors(self):
        client, _ = embedding_client([])
        with pytest.raises(StageError) as exc:
            asyncio.run(OpenAIEmbedder(client).embed("x"))
        assert exc.value.stage == "semantic"

    def test_client_error(self):
        client, _ = embedding_client(error=openai.OpenAIError("boom"))
        with pytest.raises(StageError):
            asyncio.run(OpenAIEmbedder(client).embed("x"))
