"""Tests for the service container."""

from unittest.mock import AsyncMock

import pytest

from config.factory import ServiceContainer, build_enrichment
from config.settings import (
    AnswerConfig,
    AppConfig,
    DatabaseConfig,
    EnrichmentConfig,
    PipelineConfig,
    VectorIndexConfig,
)
from indexer.embeddings import SentenceTransformerEmbedder
from services.enrichment import MCPEnrichmentProvider, NullEnrichmentProvider
from services.llm import GeminiLanguageModel


@pytest.fixture
def config(tmp_path):
    return AppConfig(
        database=DatabaseConfig(url="sqlite:///:memory:"),
        vector_index=VectorIndexConfig(path=str(tmp_path / "vectors.db")),
        pipeline=PipelineConfig(chunk_size=500, chunk_overlap=50, embed_batch_size=3),
        answer=AnswerConfig(top_k=7, min_score=0.4, history_turns=3, product_name="Acme")
    )


class TestServiceContainer:

    def test_wiring_from_config(self, config):
        container = ServiceContainer(config)

        assert isinstance(container.embedder, SentenceTransformerEmbedder)
        assert isinstance(container.llm, GeminiLanguageModel)
        assert isinstance(container.enrichment, NullEnrichmentProvider)
        assert container.indexer.chunker.chunk_size == 500
        assert container.indexer.chunker.chunk_overlap == 50
        assert container.indexer.batch_size == 3
        assert container.answer_engine.top_k == 7
        assert container.answer_engine.min_score == 0.4
        assert "Acme" in container.answer_engine.fallback_message
        assert container.chat.history_limit == 6
        assert container.fetcher.block_private_networks

    def test_chat_history_fits_prompt_window(self, config, embedder, llm):
        container = ServiceContainer(config, embedder=embedder, llm=llm)
        history = [
            {"role": "user" if i % 2 == 0 else "assistant", "content": f"message {i}"}
            for i in range(container.chat.history_limit)
        ]

        prompt = container.answer_engine.build_prompt("question", "ctx", history)

        assert all(f"message {i}\n" in prompt for i in range(len(history)))

    def test_overrides_used(self, config, embedder, llm):
        container = ServiceContainer(config, embedder=embedder, llm=llm)

        assert container.embedder is embedder
        assert container.indexer.embedder is embedder
        assert container.answer_engine.llm is llm

    @pytest.mark.asyncio
    async def test_open_and_close(self, config, embedder, llm):
        async with ServiceContainer(config, embedder=embedder, llm=llm) as container:
            assert await container.store.document_stats() == {
                "pending": 0, "processed": 0, "failed": 0, "total": 0
            }
            assert (await container.vector_index.stats()).count == 0

        assert container.store.engine is None
        assert container.vector_index.conn is None

    @pytest.mark.asyncio
    async def test_close_continues_after_errors(self, config, embedder, llm):
        container = ServiceContainer(config, embedder=embedder, llm=llm)
        await container.open(embedder=False, llm=False, enrichment=False)
        container.llm.close = AsyncMock(side_effect=RuntimeError("close failed"))

        await container.close()

        assert container.store.engine is None


class TestBuildEnrichment:

    def test_disabled_without_command(self):
        assert isinstance(build_enrichment(EnrichmentConfig()), NullEnrichmentProvider)

    def test_mcp_when_command_set(self):
        provider = build_enrichment(EnrichmentConfig(command="mcp-docs", args=["--stdio"], tool="lookup"))

        assert isinstance(provider, MCPEnrichmentProvider)
        assert provider.tool == "lookup"
        assert provider.client.command == "mcp-docs"
        assert provider.client.args == ["--stdio"]
