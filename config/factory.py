"""Service container for DocSage.

Builds every collaborator from an :class:`AppConfig` and wires the
scraper, indexer, answer engine and chat service on top of them. Pass
keyword overrides to substitute components (tests use this for fakes).
"""

import logging
from typing import Optional

from indexer.document_store import DocumentStore
from indexer.embeddings import EmbeddingClient, build_embedder
from indexer.vector_store import SQLiteVectorIndex, VectorIndex
from pipelines.chunker import RecursiveChunker
from pipelines.crawler import DocumentScraper
from pipelines.fetcher import Fetcher
from pipelines.indexer import Indexer
from pipelines.rate_limit import TokenBucket
from services.answer_engine import AnswerEngine
from services.chat import ChatService
from services.conversations import ConversationLedger
from services.enrichment import EnrichmentProvider, MCPEnrichmentProvider, NullEnrichmentProvider
from services.llm import GeminiLanguageModel, LanguageModel
from .settings import AppConfig

logger = logging.getLogger(__name__)


def build_enrichment(config) -> EnrichmentProvider:
    if config.enabled:
        return MCPEnrichmentProvider(
            command=config.command, args=config.args, tool=config.tool, timeout=config.timeout
        )
    return NullEnrichmentProvider()


class ServiceContainer:
    """Owns the lifecycle of the stores and external clients."""

    def __init__(self,
                 config: Optional[AppConfig] = None,
                 *,
                 store: Optional[DocumentStore] = None,
                 embedder: Optional[EmbeddingClient] = None,
                 vector_index: Optional[VectorIndex] = None,
                 fetcher: Optional[Fetcher] = None,
                 llm: Optional[LanguageModel] = None,
                 enrichment: Optional[EnrichmentProvider] = None):
        self.config = config or AppConfig.from_env()
        cfg = self.config

        self.store = store or DocumentStore(cfg.database.url, echo=cfg.database.echo)
        self.embedder = embedder or build_embedder(
            cfg.embedding,
            rate_limiter=TokenBucket(cfg.embedding.calls_per_second, name="embedding")
        )
        self.vector_index = vector_index or SQLiteVectorIndex(
            path=cfg.vector_index.path,
            name=cfg.vector_index.name,
            dimension=cfg.embedding.dimension
        )
        self.fetcher = fetcher or Fetcher(
            timeout=cfg.fetch.timeout,
            render_timeout=cfg.fetch.render_timeout,
            user_agent=cfg.fetch.user_agent,
            browser_enabled=cfg.fetch.browser_enabled,
            block_private_networks=cfg.fetch.block_private_networks,
            rate_limiter=TokenBucket(cfg.fetch.calls_per_second, name="fetch")
        )
        self.llm = llm or GeminiLanguageModel(
            api_key=cfg.llm.api_key,
            model_name=cfg.llm.model,
            temperature=cfg.llm.temperature,
            timeout=cfg.llm.timeout,
            rate_limiter=TokenBucket(cfg.llm.calls_per_second, name="llm")
        )
        self.enrichment = enrichment or build_enrichment(cfg.enrichment)

        self.ledger = ConversationLedger(self.store)
        self.scraper = DocumentScraper(self.fetcher, self.store, delay=cfg.pipeline.scrape_delay)
        self.indexer = Indexer(
            self.store,
            self.embedder,
            self.vector_index,
            chunker=RecursiveChunker(cfg.pipeline.chunk_size, cfg.pipeline.chunk_overlap),
            batch_size=cfg.pipeline.embed_batch_size,
            batch_delay=cfg.pipeline.embed_batch_delay
        )
        self.answer_engine = AnswerEngine(
            self.store,
            self.embedder,
            self.vector_index,
            self.llm,
            enrichment=self.enrichment,
            top_k=cfg.answer.top_k,
            min_score=cfg.answer.min_score,
            history_turns=cfg.answer.history_turns,
            product_name=cfg.answer.product_name,
            enrichment_timeout=cfg.enrichment.timeout
        )
        self.chat = ChatService(
            self.answer_engine, self.ledger, history_limit=max(2 * cfg.answer.history_turns, 1)
        )
        self._opened = False

    async def open(self, *, embedder: bool = True, llm: bool = True,
                   enrichment: bool = True) -> 'ServiceContainer':
        """Open the store, the index and the clients.

        Clients a command does not need can be skipped; the embedder and the
        language model still prepare themselves lazily on first use.
        """
        if self._opened:
            return self
        await self.store.initialize()
        await self.vector_index.open()
        if embedder:
            await self.embedder.open()
        if llm:
            await self.llm.open()
        if enrichment:
            await self.enrichment.open()
        self._opened = True
        logger.info("Services opened")
        return self

    async def close(self) -> None:
        """Close everything that was opened, in reverse order."""
        for name, closer in (
            ("enrichment", self.enrichment.close),
            ("llm", self.llm.close),
            ("fetcher", self.fetcher.close),
            ("embedder", self.embedder.close),
            ("vector index", self.vector_index.close),
            ("store", self.store.close),
        ):
            try:
                await closer()
            except Exception as e:
                logger.error(f"Error closing {name}: {e}")
        self._opened = False
        logger.info("Services closed")

    async def __aenter__(self) -> 'ServiceContainer':
        return await self.open()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
