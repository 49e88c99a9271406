"""Shared fixtures: in-memory stores and deterministic fakes for external services."""

import threading
from typing import AsyncIterator, Dict, List, Optional, Sequence

import pytest

from indexer.document_store import DocumentStore
from indexer.embeddings import EmbeddingClient
from indexer.vector_store import SQLiteVectorIndex
from services.enrichment import EnrichmentProvider
from services.llm import LanguageModel

DIMENSION = 4
DEFAULT_VECTOR = [1.0, 0.0, 0.0, 0.0]


class FakeEmbedder(EmbeddingClient):
    """Returns configured vectors per text; ``DEFAULT_VECTOR`` otherwise."""

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None,
                 failing: Optional[Sequence[str]] = None, **kwargs):
        kwargs.setdefault("dimension", DIMENSION)
        super().__init__(**kwargs)
        self.vectors = dict(vectors or {})
        self.failing = set(failing or ())
        self.calls: List[tuple] = []
        self._lock = threading.Lock()

    def _embed_sync(self, text: str, task: str) -> Sequence[float]:
        with self._lock:
            self.calls.append((text, task))
        if text in self.failing:
            raise RuntimeError(f"provider rejected {text[:20]!r}")
        return self.vectors.get(text, DEFAULT_VECTOR)


class FakeLanguageModel(LanguageModel):
    """Records prompts and replies with fixed text."""

    def __init__(self, reply: str = "Refunds take 5-10 business days.", error: Exception = None):
        super().__init__(timeout=5.0)
        self.reply = reply
        self.error = error
        self.prompts: List[str] = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.reply

    async def stream(self, prompt: str) -> AsyncIterator[str]:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        for word in self.reply.split(" "):
            yield word + " "


class FakeEnrichment(EnrichmentProvider):
    """Enrichment with a fixed result or error."""

    def __init__(self, result: Optional[str] = None, error: Exception = None, delay: float = 0.0):
        self.result = result
        self.error = error
        self.delay = delay
        self.queries: List[str] = []

    async def list_capabilities(self) -> List[str]:
        return ["search_docs"]

    async def invoke(self, name, arguments):
        return self.result

    async def enrich(self, query, hits=()):
        import asyncio
        self.queries.append(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


@pytest.fixture
async def store():
    document_store = DocumentStore("sqlite:///:memory:")
    await document_store.initialize()
    yield document_store
    await document_store.close()


@pytest.fixture
async def vector_index():
    index = SQLiteVectorIndex(path=":memory:", name="test", dimension=DIMENSION)
    await index.open()
    yield index
    await index.close()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def llm():
    return FakeLanguageModel()


@pytest.fixture
def fake_embedder_class():
    return FakeEmbedder


@pytest.fixture
def fake_llm_class():
    return FakeLanguageModel


@pytest.fixture
def fake_enrichment_class():
    return FakeEnrichment


@pytest.fixture
def add_document(store):
    """Factory storing a pending document with the given cleaned text."""
    counter = {"n": 0}

    async def _add(text: str = "Some documentation text.", url: Optional[str] = None,
                   title: str = "Test Page"):
        counter["n"] += 1
        return await store.create_document(
            url=url or f"https://docs.example.com/page-{counter['n']}",
            title=title,
            raw_content=f"<html><body><p>{text}</p></body></html>",
            cleaned_content=text,
            word_count=len(text.split())
        )

    return _add
