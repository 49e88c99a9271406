"""Answer engine: retrieval-augmented answers with cited sources.

Embeds the query, searches the vector index, keeps hits above a similarity
floor, assembles a labelled context block, optionally adds enrichment from a
capability provider and asks the language model for a grounded answer.
The engine never writes conversation history; callers own that.
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from indexer.document_store import DocumentStore
from indexer.embeddings import EmbeddingClient
from indexer.vector_store import VectorIndex, VectorMatch
from observability.metrics import answer_duration, answers_total, enrichment_total
from services.enrichment import EnrichmentProvider, NullEnrichmentProvider
from services.llm import LanguageModel
from services.shared.errors import AnswerError, ValidationError
from services.shared.models import MessageRole, chunk_id_from_vector_id

logger = logging.getLogger(__name__)

EXCERPT_LENGTH = 200
MAX_QUERY_LENGTH = 4000
ENRICHMENT_TIMEOUT = 10.0

FALLBACK_TEMPLATE = (
    "I apologize, but I don't have enough specific information in my records to answer "
    "that accurately. Would you like me to suggest how to contact {product}'s human support team?"
)

SYSTEM_PROMPT_TEMPLATE = """You are a senior {product} support specialist. Your goal is to provide clear, professional and actionable answers to questions about {product}.

ROLE & TONE:
- Professional, empathetic and concise.
- Speak as a knowledgeable person, not as a technical manual.
- Never mention retrieval, databases or internal tooling.

GUIDELINES:
1. Base your answer ONLY on the documentation context provided below.
2. When the user has a problem, explain why it happens and then how to fix it in simple steps.
3. Only include code or API details when the question clearly comes from a developer.
4. If the context does not contain the answer, reply exactly: "{fallback}"
5. Format with clean Markdown: bold key terms and use bullet points for steps."""


@dataclass
class RetrievedChunk:
    """A vector hit resolved to its chunk and source document."""
    vector_id: str
    score: float
    text: str
    title: str
    url: str
    chunk_id: Optional[int] = None
    document_id: Optional[int] = None


@dataclass
class SourceCitation:
    title: str
    url: str
    score: float
    excerpt: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class AnswerMetadata:
    chunks_used: int
    average_score: float
    augmented: bool
    timestamp: str
    session_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Answer:
    response_text: str
    sources: List[SourceCitation] = field(default_factory=list)
    metadata: Optional[AnswerMetadata] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "response_text": self.response_text,
            "sources": [source.to_dict() for source in self.sources],
            "metadata": self.metadata.to_dict() if self.metadata else None
        }


@dataclass
class StreamingAnswer:
    """Sources and metadata up front; the text arrives through ``chunks``."""
    sources: List[SourceCitation]
    metadata: AnswerMetadata
    chunks: AsyncIterator[str]


def _turn_fields(turn: Any):
    if isinstance(turn, dict):
        return turn.get("role"), turn.get("content", "")
    return getattr(turn, "role", None), getattr(turn, "content", "")


def build_context(hits: Sequence[RetrievedChunk]) -> str:
    """Numbered, labelled context block; one entry per hit."""
    if not hits:
        return "No relevant documentation found."
    parts = []
    for number, hit in enumerate(hits, start=1):
        parts.append(f"[Source {number}: {hit.title}]\nURL: {hit.url}\n{hit.text}\n\n---\n\n")
    return "".join(parts).rstrip()


def make_excerpt(text: str, length: int = EXCERPT_LENGTH) -> str:
    if len(text) <= length:
        return text
    return text[:length] + "..."


async def _single(text: str) -> AsyncIterator[str]:
    yield text


class AnswerEngine:
    """Answers questions from the indexed documentation."""

    def __init__(self,
                 store: DocumentStore,
                 embedder: EmbeddingClient,
                 vector_index: VectorIndex,
                 llm: LanguageModel,
                 enrichment: Optional[EnrichmentProvider] = None,
                 top_k: int = 5,
                 min_score: float = 0.5,
                 history_turns: int = 5,
                 product_name: str = "Stripe",
                 enrichment_timeout: float = ENRICHMENT_TIMEOUT):
        self.store = store
        self.embedder = embedder
        self.vector_index = vector_index
        self.llm = llm
        self.enrichment = enrichment or NullEnrichmentProvider()
        self.top_k = top_k
        self.min_score = min_score
        self.history_turns = history_turns
        self.product_name = product_name
        self.enrichment_timeout = enrichment_timeout
        self.fallback_message = FALLBACK_TEMPLATE.format(product=product_name)
        self.system_prompt = SYSTEM_PROMPT_TEMPLATE.format(
            product=product_name, fallback=self.fallback_message
        )

    def _validate(self, query: str, top_k: int) -> str:
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("Query must be a non-empty string")
        if len(query) > MAX_QUERY_LENGTH:
            raise ValidationError(f"Query exceeds {MAX_QUERY_LENGTH} characters")
        if top_k < 1:
            raise ValidationError("top_k must be at least 1")
        return query.strip()

    async def _resolve(self, matches: Sequence[VectorMatch]) -> List[RetrievedChunk]:
        """Attach chunk text and document provenance to vector hits."""
        ids = {match.id: chunk_id_from_vector_id(match.id) for match in matches}
        chunks = await self.store.get_chunks(cid for cid in ids.values() if cid is not None)

        hits = []
        for match in matches:
            chunk = chunks.get(ids[match.id])
            if chunk is not None and chunk.document is not None:
                hits.append(RetrievedChunk(
                    vector_id=match.id,
                    score=match.score,
                    text=chunk.text,
                    title=chunk.document.title,
                    url=chunk.document.url,
                    chunk_id=chunk.id,
                    document_id=chunk.document_id
                ))
            else:
                # Chunk gone from the store; fall back to what the index kept
                logger.debug(f"Vector {match.id} has no stored chunk, using its metadata")
                meta = match.metadata or {}
                hits.append(RetrievedChunk(
                    vector_id=match.id,
                    score=match.score,
                    text=meta.get("text", ""),
                    title=meta.get("title") or "Untitled Document",
                    url=meta.get("url") or "",
                    chunk_id=meta.get("chunk_id"),
                    document_id=meta.get("document_id")
                ))
        return hits

    async def retrieve(self, query: str, top_k: Optional[int] = None,
                       min_score: Optional[float] = None) -> List[RetrievedChunk]:
        """Embed, search, resolve and filter by ``min_score``."""
        top_k = self.top_k if top_k is None else top_k
        min_score = self.min_score if min_score is None else min_score
        query = self._validate(query, top_k)

        vector = await self.embedder.embed_query(query)
        matches = await self.vector_index.query(vector, top_k=top_k)
        hits = await self._resolve(matches)
        relevant = [hit for hit in hits if hit.score >= min_score]
        logger.info(f"Retrieved {len(matches)} hits, {len(relevant)} above min score {min_score}")
        return relevant

    async def _enrich(self, query: str, hits: Sequence[RetrievedChunk]) -> Optional[str]:
        """Ask the enrichment provider for extra context; never raises."""
        try:
            extra = await asyncio.wait_for(
                self.enrichment.enrich(query, hits), timeout=self.enrichment_timeout
            )
        except Exception as e:
            logger.warning(f"Enrichment skipped: {type(e).__name__}: {e}")
            enrichment_total.labels(outcome="failure").inc()
            return None
        if extra and extra.strip():
            enrichment_total.labels(outcome="used").inc()
            return extra.strip()
        enrichment_total.labels(outcome="empty").inc()
        return None

    def build_prompt(self, query: str, context: str, history: Sequence[Any] = ()) -> str:
        """System instructions, recent history, context, then the question."""
        prompt = f"{self.system_prompt}\n\n"

        # A turn is a user message and the assistant reply to it.
        recent = list(history)[-2 * self.history_turns:] if self.history_turns > 0 else []
        if recent:
            prompt += "Previous conversation:\n"
            for turn in recent:
                role, content = _turn_fields(turn)
                label = "User" if role == MessageRole.USER.value else "Assistant"
                prompt += f"{label}: {content}\n"
            prompt += "\n"

        prompt += f"Relevant documentation:\n\n{context}\n\n"
        prompt += f"User question: {query}\n\n"
        prompt += "Please provide a helpful and accurate answer based on the context above:"
        return prompt

    def _metadata(self, hits: Sequence[RetrievedChunk], augmented: bool,
                  session_id: Optional[str]) -> AnswerMetadata:
        average = sum(hit.score for hit in hits) / len(hits) if hits else 0.0
        return AnswerMetadata(
            chunks_used=len(hits),
            average_score=round(average, 3),
            augmented=augmented,
            timestamp=datetime.now(timezone.utc).isoformat(),
            session_id=session_id
        )

    @staticmethod
    def _sources(hits: Sequence[RetrievedChunk]) -> List[SourceCitation]:
        return [
            SourceCitation(title=hit.title, url=hit.url, score=hit.score, excerpt=make_excerpt(hit.text))
            for hit in hits
        ]

    async def _prepare(self, query: str, session_id: Optional[str], top_k: Optional[int],
                       min_score: Optional[float], history: Optional[Sequence[Any]],
                       use_enrichment: bool):
        """Steps shared by :meth:`answer` and :meth:`stream_answer`.

        Returns ``(hits, prompt, metadata)``; ``prompt`` is None when nothing
        relevant was found.
        """
        try:
            hits = await self.retrieve(query, top_k=top_k, min_score=min_score)
        except ValidationError:
            raise
        except Exception as e:
            answers_total.labels(outcome="error").inc()
            logger.error(f"Retrieval failed: {type(e).__name__}: {e}")
            raise AnswerError(f"Retrieval failed: {e}") from e

        if not hits:
            return hits, None, self._metadata(hits, False, session_id)

        context = build_context(hits)
        augmented = False
        if use_enrichment:
            extra = await self._enrich(query, hits)
            if extra:
                context += f"\n\nSupplementary context:\n{extra}"
                augmented = True

        prompt = self.build_prompt(query.strip(), context, history or ())
        return hits, prompt, self._metadata(hits, augmented, session_id)

    async def answer(self, query: str, session_id: Optional[str] = None,
                     top_k: Optional[int] = None, min_score: Optional[float] = None,
                     history: Optional[Sequence[Any]] = None,
                     use_enrichment: bool = True) -> Answer:
        """Answer ``query`` from the indexed documentation.

        Raises:
            ValidationError: For an empty query or ``top_k`` below 1
            AnswerError: If embedding, search, chunk lookup or generation fails
        """
        start = time.perf_counter()
        hits, prompt, metadata = await self._prepare(
            query, session_id, top_k, min_score, history, use_enrichment
        )

        if prompt is None:
            answers_total.labels(outcome="fallback").inc()
            answer_duration.observe(time.perf_counter() - start)
            return Answer(response_text=self.fallback_message, sources=[], metadata=metadata)

        try:
            text = await self.llm.generate(prompt)
        except Exception as e:
            answers_total.labels(outcome="error").inc()
            logger.error(f"Generation failed: {type(e).__name__}: {e}")
            raise AnswerError(f"Generation failed: {e}") from e

        answers_total.labels(outcome="answered").inc()
        answer_duration.observe(time.perf_counter() - start)
        logger.info(f"Answered with {metadata.chunks_used} chunks (avg score {metadata.average_score})")
        return Answer(response_text=text or self.fallback_message, sources=self._sources(hits), metadata=metadata)

    async def stream_answer(self, query: str, session_id: Optional[str] = None,
                            top_k: Optional[int] = None, min_score: Optional[float] = None,
                            history: Optional[Sequence[Any]] = None,
                            use_enrichment: bool = True) -> StreamingAnswer:
        """Like :meth:`answer`, but the text is produced incrementally.

        Generation failures while streaming surface as :class:`AnswerError`
        from the iterator.
        """
        hits, prompt, metadata = await self._prepare(
            query, session_id, top_k, min_score, history, use_enrichment
        )
        if prompt is None:
            answers_total.labels(outcome="fallback").inc()
            return StreamingAnswer(sources=[], metadata=metadata, chunks=_single(self.fallback_message))

        return StreamingAnswer(
            sources=self._sources(hits),
            metadata=metadata,
            chunks=self._stream_text(prompt)
        )

    async def _stream_text(self, prompt: str) -> AsyncIterator[str]:
        try:
            async for piece in self.llm.stream(prompt):
                yield piece
        except Exception as e:
            answers_total.labels(outcome="error").inc()
            logger.error(f"Streaming generation failed: {type(e).__name__}: {e}")
            raise AnswerError(f"Generation failed: {e}") from e
        answers_total.labels(outcome="answered").inc()
