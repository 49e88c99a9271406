"""Tests for the chat service."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from services.answer_engine import Answer, AnswerMetadata, SourceCitation, StreamingAnswer
from services.chat import ChatService
from services.conversations import ConversationLedger
from services.shared.errors import SAFE_ERROR_MESSAGE, AnswerError, ValidationError
from services.shared.models import MessageRole


def make_answer(text="Refunds take 5-10 business days."):
    return Answer(
        response_text=text,
        sources=[SourceCitation(title="Refunds", url="https://docs.stripe.com/refunds", score=0.91, excerpt="...")],
        metadata=AnswerMetadata(chunks_used=1, average_score=0.91, augmented=False, timestamp="2024-01-01T00:00:00Z")
    )


@pytest.fixture
def ledger(store):
    return ConversationLedger(store)


@pytest.fixture
def engine():
    mock_engine = MagicMock()
    mock_engine.answer = AsyncMock(return_value=make_answer())
    mock_engine.fallback_message = "fallback"
    return mock_engine


class TestChatService:
    """Test suite for ChatService."""

    @pytest.mark.asyncio
    async def test_ask_records_both_turns(self, engine, ledger):
        chat = ChatService(engine, ledger)

        response = await chat.ask("  How long do refunds take?  ")

        assert response.success
        assert response.response == "Refunds take 5-10 business days."
        assert response.sources[0]["title"] == "Refunds"
        assert "processing_time_ms" in response.metadata
        messages = await ledger.messages(response.session_id)
        assert [(m.role, m.content) for m in messages] == [
            ("user", "How long do refunds take?"),
            ("assistant", "Refunds take 5-10 business days."),
        ]
        assert messages[1].sources[0]["url"] == "https://docs.stripe.com/refunds"
        assert messages[1].processing_time_ms is not None

    @pytest.mark.asyncio
    async def test_history_passed_to_engine(self, engine, ledger):
        chat = ChatService(engine, ledger, history_limit=10)
        first = await chat.ask("First question")

        await chat.ask("Follow-up", session_id=first.session_id)

        history = engine.answer.await_args_list[1].kwargs["history"]
        assert [(turn.role, turn.content) for turn in history] == [
            (MessageRole.USER.value, "First question"),
            (MessageRole.ASSISTANT.value, "Refunds take 5-10 business days."),
        ]
        assert engine.answer.await_args_list[1].kwargs["session_id"] == first.session_id

    @pytest.mark.asyncio
    async def test_history_limit(self, engine, ledger):
        chat = ChatService(engine, ledger, history_limit=2)
        first = await chat.ask("one")
        await chat.ask("two", session_id=first.session_id)

        await chat.ask("three", session_id=first.session_id)

        history = engine.answer.await_args_list[2].kwargs["history"]
        assert [turn.content for turn in history] == ["two", "Refunds take 5-10 business days."]

    @pytest.mark.asyncio
    async def test_answer_error_returns_safe_message(self, engine, ledger):
        engine.answer = AsyncMock(side_effect=AnswerError("Generation failed: quota exceeded"))
        chat = ChatService(engine, ledger)

        response = await chat.ask("Question?")

        assert not response.success
        assert response.response == SAFE_ERROR_MESSAGE
        assert "quota" in response.error
        messages = await ledger.messages(response.session_id)
        assert [m.role for m in messages] == ["user"]

    @pytest.mark.asyncio
    async def test_empty_query_rejected(self, engine, ledger):
        chat = ChatService(engine, ledger)
        with pytest.raises(ValidationError):
            await chat.ask("   ")
        engine.answer.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_options_forwarded(self, engine, ledger):
        chat = ChatService(engine, ledger)

        await chat.ask("Q", top_k=3, min_score=0.7, use_enrichment=False)

        kwargs = engine.answer.await_args.kwargs
        assert kwargs["top_k"] == 3
        assert kwargs["min_score"] == 0.7
        assert kwargs["use_enrichment"] is False

    @pytest.mark.asyncio
    async def test_to_dict(self, engine, ledger):
        response = await ChatService(engine, ledger).ask("Q", session_id="fixed")

        data = response.to_dict()
        assert data["session_id"] == "fixed"
        assert data["success"] is True
        assert data["error"] is None

    @pytest.mark.asyncio
    async def test_stream_records_full_text(self, engine, ledger):
        async def pieces():
            for piece in ["Refunds ", "take ", "a week."]:
                yield piece

        answer = make_answer()
        engine.stream_answer = AsyncMock(return_value=StreamingAnswer(
            sources=answer.sources, metadata=answer.metadata, chunks=pieces()
        ))
        chat = ChatService(engine, ledger)

        received = [piece async for piece in chat.stream("Q", session_id="stream-1")]

        assert received == ["Refunds ", "take ", "a week."]
        messages = await ledger.messages("stream-1")
        assert messages[-1].content == "Refunds take a week."
        assert messages[-1].role == "assistant"
