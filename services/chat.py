"""Chat service: answers questions within a persisted conversation."""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional

from services.answer_engine import AnswerEngine
from services.conversations import ConversationLedger
from services.shared.errors import AnswerError, ValidationError
from services.shared.models import MessageRole

logger = logging.getLogger(__name__)


@dataclass
class ChatResponse:
    success: bool
    session_id: str
    response: str
    sources: List[Dict[str, Any]] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "session_id": self.session_id,
            "response": self.response,
            "sources": self.sources,
            "metadata": self.metadata,
            "error": self.error
        }


class ChatService:
    """Reads history from the ledger, asks the engine, records both turns."""

    def __init__(self, engine: AnswerEngine, ledger: ConversationLedger, history_limit: int = 10):
        self.engine = engine
        self.ledger = ledger
        self.history_limit = history_limit

    async def ask(self, query: str, session_id: Optional[str] = None,
                  user_id: Optional[str] = None, top_k: Optional[int] = None,
                  min_score: Optional[float] = None, use_enrichment: bool = True) -> ChatResponse:
        """Answer ``query`` in a conversation, creating it when needed.

        Engine failures come back as ``success=False`` with a user-safe
        message; only the user turn is recorded in that case.

        Raises:
            ValidationError: For an empty query
        """
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("Query must be a non-empty string")
        query = query.strip()

        conversation = await self.ledger.get_or_create(session_id, user_id=user_id)
        session_id = conversation.session_id
        history = await self.ledger.history(session_id, limit=self.history_limit)
        await self.ledger.append(session_id, MessageRole.USER, query)

        start = time.perf_counter()
        try:
            answer = await self.engine.answer(
                query,
                session_id=session_id,
                top_k=top_k,
                min_score=min_score,
                history=history,
                use_enrichment=use_enrichment
            )
        except AnswerError as e:
            logger.error(f"Chat answer failed for session {session_id}: {e}")
            return ChatResponse(
                success=False,
                session_id=session_id,
                response=e.user_message,
                error=str(e)
            )

        processing_ms = int((time.perf_counter() - start) * 1000)
        sources = [source.to_dict() for source in answer.sources]
        metadata = answer.metadata.to_dict()
        await self.ledger.append(
            session_id,
            MessageRole.ASSISTANT,
            answer.response_text,
            sources=sources,
            metadata=metadata,
            processing_time_ms=processing_ms
        )
        return ChatResponse(
            success=True,
            session_id=session_id,
            response=answer.response_text,
            sources=sources,
            metadata={**metadata, "processing_time_ms": processing_ms}
        )

    async def stream(self, query: str, session_id: Optional[str] = None,
                     user_id: Optional[str] = None, use_enrichment: bool = True) -> AsyncIterator[str]:
        """Yield the answer in pieces; the full text is recorded once complete."""
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("Query must be a non-empty string")
        query = query.strip()

        conversation = await self.ledger.get_or_create(session_id, user_id=user_id)
        session_id = conversation.session_id
        history = await self.ledger.history(session_id, limit=self.history_limit)
        await self.ledger.append(session_id, MessageRole.USER, query)

        start = time.perf_counter()
        streamed = await self.engine.stream_answer(
            query, session_id=session_id, history=history, use_enrichment=use_enrichment
        )
        pieces = []
        async for piece in streamed.chunks:
            pieces.append(piece)
            yield piece

        text = "".join(pieces).strip() or self.engine.fallback_message
        await self.ledger.append(
            session_id,
            MessageRole.ASSISTANT,
            text,
            sources=[source.to_dict() for source in streamed.sources],
            metadata=streamed.metadata.to_dict(),
            processing_time_ms=int((time.perf_counter() - start) * 1000)
        )
