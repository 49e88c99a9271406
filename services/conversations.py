"""Conversation ledger: append-only chat history per session."""

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select

from indexer.document_store import DocumentStore
from services.shared.errors import NotFoundError, ValidationError
from services.shared.models import (
    Conversation,
    ConversationStatus,
    Message,
    MessageRole,
    utcnow,
)

logger = logging.getLogger(__name__)

TITLE_LENGTH = 100


@dataclass(frozen=True)
class ConversationTurn:
    """A role-labelled message, as fed back into prompts."""
    role: str
    content: str


class ConversationLedger:
    """Stores conversations and their messages in the document store's database.

    Messages are never edited after they are written; feedback is the only
    mutation.
    """

    def __init__(self, store: DocumentStore):
        self.store = store

    def _find(self, session, session_id: str) -> Conversation:
        conversation = session.scalar(
            select(Conversation).where(Conversation.session_id == session_id)
        )
        if conversation is None:
            raise NotFoundError("Conversation", session_id)
        return conversation

    async def get_or_create(self, session_id: Optional[str] = None,
                            user_id: Optional[str] = None,
                            metadata: Optional[Dict[str, Any]] = None) -> Conversation:
        """Return the conversation for ``session_id``, creating it when absent.

        Without a session id a new conversation with a fresh UUID is started.
        """
        with self.store.session() as session:
            if session_id:
                conversation = session.scalar(
                    select(Conversation).where(Conversation.session_id == session_id)
                )
                if conversation is not None:
                    return conversation

            conversation = Conversation(
                session_id=session_id or str(uuid.uuid4()),
                user_id=user_id,
                status=ConversationStatus.ACTIVE.value,
                meta=metadata or {}
            )
            session.add(conversation)
            session.flush()
            logger.info(f"Started conversation {conversation.session_id}")
            return conversation

    async def get(self, session_id: str) -> Conversation:
        with self.store.session() as session:
            return self._find(session, session_id)

    async def append(self, session_id: str, role: MessageRole, content: str,
                     sources: Optional[List[Dict[str, Any]]] = None,
                     metadata: Optional[Dict[str, Any]] = None,
                     processing_time_ms: Optional[int] = None) -> Message:
        """Append one message and bump the conversation's activity time.

        The first user message also becomes the conversation title.
        """
        role = MessageRole(role)
        if not content:
            raise ValidationError("Message content must not be empty")

        with self.store.session() as session:
            conversation = self._find(session, session_id)
            message = Message(
                conversation_id=conversation.id,
                role=role.value,
                content=content,
                sources=sources or [],
                meta=metadata or {},
                processing_time_ms=processing_time_ms
            )
            session.add(message)
            conversation.last_message_at = utcnow()
            if role == MessageRole.USER and not conversation.title:
                conversation.title = content[:TITLE_LENGTH]
            session.flush()
            return message

    async def history(self, session_id: str, limit: int = 10) -> List[ConversationTurn]:
        """The last ``limit`` messages, oldest first."""
        if limit <= 0:
            return []
        with self.store.session() as session:
            conversation = self._find(session, session_id)
            rows = session.scalars(
                select(Message)
                .where(Message.conversation_id == conversation.id)
                .order_by(Message.id.desc())
                .limit(limit)
            ).all()
        return [ConversationTurn(role=m.role, content=m.content) for m in reversed(rows)]

    async def messages(self, session_id: str) -> List[Message]:
        """Every message of a conversation, oldest first."""
        with self.store.session() as session:
            conversation = self._find(session, session_id)
            return list(session.scalars(
                select(Message)
                .where(Message.conversation_id == conversation.id)
                .order_by(Message.id)
            ))

    async def recent(self, limit: int = 20, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Active conversations, most recently used first, with message counts."""
        stmt = (
            select(Conversation, func.count(Message.id))
            .outerjoin(Message, Message.conversation_id == Conversation.id)
            .where(Conversation.status == ConversationStatus.ACTIVE.value)
            .group_by(Conversation.id)
            .order_by(Conversation.last_message_at.desc(), Conversation.id.desc())
        )
        if user_id is not None:
            stmt = stmt.where(Conversation.user_id == user_id)
        stmt = stmt.limit(limit)

        with self.store.session() as session:
            rows = session.execute(stmt).all()
        return [
            {
                "session_id": conversation.session_id,
                "title": conversation.title,
                "started_at": conversation.started_at.isoformat(),
                "last_message_at": conversation.last_message_at.isoformat(),
                "message_count": count
            }
            for conversation, count in rows
        ]

    async def add_feedback(self, message_id: int, feedback: Dict[str, Any]) -> Message:
        """Merge feedback into a message and stamp when it was given."""
        if not feedback:
            raise ValidationError("Feedback must not be empty")
        with self.store.session() as session:
            message = session.get(Message, message_id)
            if message is None:
                raise NotFoundError("Message", message_id)
            message.feedback = {
                **(message.feedback or {}),
                **feedback,
                "timestamp": utcnow().isoformat()
            }
            return message

    async def archive(self, session_id: str) -> Conversation:
        with self.store.session() as session:
            conversation = self._find(session, session_id)
            conversation.status = ConversationStatus.ARCHIVED.value
            logger.info(f"Archived conversation {session_id}")
            return conversation
