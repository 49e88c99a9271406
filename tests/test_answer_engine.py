"""Tests for the retrieval-augmented answer engine."""

from unittest.mock import AsyncMock, patch

import pytest

from services.answer_engine import (
    AnswerEngine,
    RetrievedChunk,
    build_context,
    make_excerpt,
)
from services.shared.errors import (
    SAFE_ERROR_MESSAGE,
    AnswerError,
    TransientExternalError,
    ValidationError,
)
from services.shared.models import vector_id_for

QUESTION = "How long do refunds take?"
REFUND_TEXT = "Refunds take 5-10 business days to appear on the customer's statement."
DISPUTE_TEXT = "A dispute occurs when a cardholder questions a payment with their bank."


@pytest.fixture
async def indexed(store, vector_index, add_document):
    """Two embedded chunks: one aligned with the question vector, one orthogonal."""
    refunds = await add_document(REFUND_TEXT, url="https://docs.stripe.com/refunds", title="Refunds")
    disputes = await add_document(DISPUTE_TEXT, url="https://docs.stripe.com/disputes", title="Disputes")
    refund_chunk = (await store.create_chunks(refunds.id, [{"text": REFUND_TEXT, "index": 0}]))[0]
    dispute_chunk = (await store.create_chunks(disputes.id, [{"text": DISPUTE_TEXT, "index": 0}]))[0]
    await vector_index.upsert(vector_id_for(refund_chunk.id), [1, 0, 0, 0], {"text": REFUND_TEXT})
    await vector_index.upsert(vector_id_for(dispute_chunk.id), [0, 1, 0, 0], {"text": DISPUTE_TEXT})
    return refund_chunk, dispute_chunk


@pytest.fixture
def make_engine(store, vector_index, embedder, llm):
    def _make(**kwargs):
        kwargs.setdefault("llm", llm)
        kwargs.setdefault("embedder", embedder)
        return AnswerEngine(store=store, vector_index=vector_index, **kwargs)
    return _make


class TestAnswer:
    """End-to-end answers against fakes."""

    @pytest.mark.asyncio
    async def test_answer_cites_relevant_sources_only(self, make_engine, llm, indexed):
        engine = make_engine()

        answer = await engine.answer(QUESTION, session_id="s1")

        assert answer.response_text == llm.reply
        assert [s.title for s in answer.sources] == ["Refunds"]
        assert answer.sources[0].url == "https://docs.stripe.com/refunds"
        assert answer.sources[0].score == pytest.approx(1.0)
        assert answer.sources[0].excerpt == REFUND_TEXT
        assert answer.metadata.chunks_used == 1
        assert answer.metadata.average_score == 1.0
        assert answer.metadata.session_id == "s1"
        assert not answer.metadata.augmented

        prompt = llm.prompts[0]
        assert REFUND_TEXT in prompt
        assert DISPUTE_TEXT not in prompt
        assert "[Source 1: Refunds]" in prompt
        assert "URL: https://docs.stripe.com/refunds" in prompt

    @pytest.mark.asyncio
    async def test_min_score_override(self, make_engine, llm, indexed):
        engine = make_engine()

        answer = await engine.answer(QUESTION, min_score=-1.0)

        assert [s.title for s in answer.sources] == ["Refunds", "Disputes"]

    @pytest.mark.asyncio
    async def test_no_relevant_hits_returns_fallback(self, make_engine, llm, indexed, fake_embedder_class):
        engine = make_engine(embedder=fake_embedder_class(vectors={QUESTION: [0, 0, 1, 0]}))

        answer = await engine.answer(QUESTION)

        assert answer.response_text == engine.fallback_message
        assert "Stripe's human support team" in answer.response_text
        assert answer.sources == []
        assert answer.metadata.chunks_used == 0
        assert llm.prompts == []

    @pytest.mark.asyncio
    async def test_empty_index_returns_fallback(self, make_engine, llm):
        answer = await make_engine().answer(QUESTION)

        assert answer.response_text == make_engine().fallback_message
        assert llm.prompts == []

    @pytest.mark.asyncio
    async def test_product_name_in_fallback_and_prompt(self, make_engine, llm, indexed):
        engine = make_engine(product_name="Acme")

        await engine.answer(QUESTION)

        assert "Acme support specialist" in llm.prompts[0]
        assert "Acme's human support team" in engine.fallback_message

    @pytest.mark.asyncio
    async def test_missing_chunk_uses_vector_metadata(self, make_engine, vector_index, llm):
        await vector_index.upsert("chunk-999", [1, 0, 0, 0], {
            "text": "Orphaned text", "title": "Old page", "url": "https://docs.stripe.com/old"
        })

        answer = await make_engine().answer(QUESTION)

        assert answer.sources[0].title == "Old page"
        assert "Orphaned text" in llm.prompts[0]

    @pytest.mark.asyncio
    async def test_generation_failure_raises_answer_error(self, make_engine, fake_llm_class, indexed):
        engine = make_engine(llm=fake_llm_class(error=TransientExternalError("quota", service="llm")))

        with pytest.raises(AnswerError) as exc_info:
            await engine.answer(QUESTION)

        assert exc_info.value.user_message == SAFE_ERROR_MESSAGE
        assert isinstance(exc_info.value.__cause__, TransientExternalError)

    @pytest.mark.asyncio
    async def test_embedding_failure_raises_answer_error(self, make_engine, fake_embedder_class, llm, indexed):
        engine = make_engine(embedder=fake_embedder_class(failing=[QUESTION]))

        with pytest.raises(AnswerError):
            await engine.answer(QUESTION)
        assert llm.prompts == []

    @pytest.mark.asyncio
    async def test_chunk_lookup_failure_raises_answer_error(self, make_engine, store, indexed):
        engine = make_engine()
        with patch.object(store, "get_chunks", AsyncMock(side_effect=RuntimeError("db gone"))):
            with pytest.raises(AnswerError, match="db gone"):
                await engine.answer(QUESTION)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("query", ["", "   ", "x" * 4001])
    async def test_invalid_query(self, make_engine, query):
        with pytest.raises(ValidationError):
            await make_engine().answer(query)

    @pytest.mark.asyncio
    async def test_invalid_top_k(self, make_engine):
        with pytest.raises(ValidationError):
            await make_engine().answer(QUESTION, top_k=0)


class TestEnrichment:
    """Optional context enrichment never breaks an answer."""

    @pytest.mark.asyncio
    async def test_enrichment_appended_to_context(self, make_engine, llm, indexed, fake_enrichment_class):
        enrichment = fake_enrichment_class(result="Refunds on Connect accounts debit the connected account.")
        engine = make_engine(enrichment=enrichment)

        answer = await engine.answer(QUESTION)

        assert answer.metadata.augmented
        assert "Supplementary context:\nRefunds on Connect accounts" in llm.prompts[0]
        assert enrichment.queries == [QUESTION]

    @pytest.mark.asyncio
    async def test_enrichment_failure_ignored(self, make_engine, llm, indexed, fake_enrichment_class):
        engine = make_engine(enrichment=fake_enrichment_class(error=ConnectionError("server died")))

        answer = await engine.answer(QUESTION)

        assert answer.response_text == llm.reply
        assert not answer.metadata.augmented

    @pytest.mark.asyncio
    async def test_enrichment_timeout_ignored(self, make_engine, llm, indexed, fake_enrichment_class):
        engine = make_engine(
            enrichment=fake_enrichment_class(result="late", delay=1.0),
            enrichment_timeout=0.05
        )

        answer = await engine.answer(QUESTION)

        assert not answer.metadata.augmented
        assert "late" not in llm.prompts[0]

    @pytest.mark.asyncio
    async def test_enrichment_can_be_disabled(self, make_engine, indexed, fake_enrichment_class):
        enrichment = fake_enrichment_class(result="extra")
        engine = make_engine(enrichment=enrichment)

        answer = await engine.answer(QUESTION, use_enrichment=False)

        assert not answer.metadata.augmented
        assert enrichment.queries == []

    @pytest.mark.asyncio
    async def test_enrichment_skipped_without_hits(self, make_engine, fake_enrichment_class):
        enrichment = fake_enrichment_class(result="extra")

        await make_engine(enrichment=enrichment).answer(QUESTION)

        assert enrichment.queries == []


class TestPrompt:
    """Prompt assembly."""

    def test_sections_in_order(self, make_engine):
        engine = make_engine()
        history = [
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello! How can I help?"},
        ]

        prompt = engine.build_prompt(QUESTION, "CONTEXT BLOCK", history)

        system = prompt.index("support specialist")
        previous = prompt.index("Previous conversation:")
        context = prompt.index("CONTEXT BLOCK")
        question = prompt.index(f"User question: {QUESTION}")
        assert system < previous < context < question
        assert "User: Hi\nAssistant: Hello! How can I help?" in prompt

    def test_history_limited_to_recent_turns(self, make_engine):
        engine = make_engine(history_turns=2)
        history = [
            {"role": "user" if i % 2 == 0 else "assistant", "content": f"message {i}"}
            for i in range(6)
        ]

        prompt = engine.build_prompt(QUESTION, "ctx", history)

        assert "message 1\n" not in prompt
        assert all(f"message {i}\n" in prompt for i in range(2, 6))

    def test_no_history_section_when_empty(self, make_engine):
        prompt = make_engine().build_prompt(QUESTION, "ctx", [])
        assert "Previous conversation" not in prompt

    @pytest.mark.asyncio
    async def test_history_passed_to_prompt(self, make_engine, llm, indexed):
        from services.conversations import ConversationTurn

        history = [ConversationTurn("user", "I sold a hoodie"), ConversationTurn("assistant", "Great")]
        await make_engine().answer(QUESTION, history=history)

        assert "User: I sold a hoodie" in llm.prompts[0]

    def test_build_context(self):
        hits = [
            RetrievedChunk(vector_id="chunk-1", score=0.9, text="First text", title="One", url="https://a"),
            RetrievedChunk(vector_id="chunk-2", score=0.8, text="Second text", title="Two", url="https://b"),
        ]

        context = build_context(hits)

        assert context.startswith("[Source 1: One]\nURL: https://a\nFirst text")
        assert "[Source 2: Two]\nURL: https://b\nSecond text" in context
        assert build_context([]) == "No relevant documentation found."

    def test_make_excerpt(self):
        assert make_excerpt("short") == "short"
        assert make_excerpt("x" * 200) == "x" * 200
        assert make_excerpt("x" * 250) == "x" * 200 + "..."


class TestStreaming:

    @pytest.mark.asyncio
    async def test_stream_answer(self, make_engine, llm, indexed):
        streamed = await make_engine().stream_answer(QUESTION)

        pieces = [piece async for piece in streamed.chunks]

        assert "".join(pieces).strip() == llm.reply
        assert [s.title for s in streamed.sources] == ["Refunds"]

    @pytest.mark.asyncio
    async def test_stream_fallback(self, make_engine):
        engine = make_engine()
        streamed = await engine.stream_answer(QUESTION)

        pieces = [piece async for piece in streamed.chunks]

        assert pieces == [engine.fallback_message]
        assert streamed.sources == []

    @pytest.mark.asyncio
    async def test_stream_failure_raises_answer_error(self, make_engine, fake_llm_class, indexed):
        engine = make_engine(llm=fake_llm_class(error=RuntimeError("stream broke")))
        streamed = await engine.stream_answer(QUESTION)

        with pytest.raises(AnswerError):
            async for _ in streamed.chunks:
                pass
