# DocSage Embeddings Module
# Embedding clients for chunks and queries

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import numpy as np
import google.generativeai as genai
from sentence_transformers import SentenceTransformer

from config.settings import EmbeddingProvider
from services.shared.errors import (
    ConfigurationError,
    DimensionMismatchError,
    ExternalTimeoutError,
    TransientExternalError,
)
from pipelines.rate_limit import TokenBucket

logger = logging.getLogger(__name__)

DOCUMENT_TASK = "retrieval_document"
QUERY_TASK = "retrieval_query"


def _to_list(vector) -> List[float]:
    return np.asarray(vector, dtype=np.float32).ravel().tolist()


class EmbeddingClient(ABC):
    """Turns text into fixed-dimension vectors.

    Every call waits on the rate limiter, runs the provider call in the
    default executor and is bounded by ``timeout``. Provider failures surface
    as :class:`TransientExternalError`; wrong-length vectors as
    :class:`DimensionMismatchError`.
    """

    def __init__(self, dimension: int = 768, timeout: float = 30.0,
                 rate_limiter: Optional[TokenBucket] = None):
        self.dimension = dimension
        self.timeout = timeout
        self.rate_limiter = rate_limiter

    @property
    def name(self) -> str:
        return type(self).__name__

    async def open(self) -> None:
        """Prepare the client (load models, configure credentials)."""

    async def close(self) -> None:
        """Release resources held by the client."""

    @abstractmethod
    def _embed_sync(self, text: str, task: str) -> Sequence[float]:
        """Blocking provider call."""

    async def embed(self, text: str, task: str = DOCUMENT_TASK) -> List[float]:
        """Embed one piece of text for storage (``task`` selects the retrieval role)."""
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire()

        loop = asyncio.get_running_loop()
        try:
            raw = await asyncio.wait_for(
                loop.run_in_executor(None, self._embed_sync, text, task),
                timeout=self.timeout
            )
        except asyncio.TimeoutError as e:
            raise ExternalTimeoutError(
                f"Embedding call timed out after {self.timeout}s", service=self.name
            ) from e
        except (ConfigurationError, DimensionMismatchError):
            raise
        except Exception as e:
            raise TransientExternalError(f"Embedding call failed: {e}", service=self.name) from e

        vector = _to_list(raw)
        if len(vector) != self.dimension:
            raise DimensionMismatchError(self.dimension, len(vector))
        return vector

    async def embed_query(self, text: str) -> List[float]:
        """Embed a user query."""
        return await self.embed(text, task=QUERY_TASK)

    async def test_connection(self) -> bool:
        """Embed a short text; True when the provider answers correctly."""
        try:
            await self.embed("connection test")
            return True
        except Exception as e:
            logger.error(f"Embedding connection test failed: {e}")
            return False


class SentenceTransformerEmbedder(EmbeddingClient):
    """Local embeddings with a sentence-transformers model."""

    def __init__(self, model_name: str = "sentence-transformers/all-mpnet-base-v2", **kwargs):
        super().__init__(**kwargs)
        self.model_name = model_name
        self.model: Optional[SentenceTransformer] = None

    def _load_model(self) -> SentenceTransformer:
        logger.info(f"Loading embedding model: {self.model_name}")
        model = SentenceTransformer(self.model_name)
        model_dimension = model.get_sentence_embedding_dimension()
        if model_dimension != self.dimension:
            raise DimensionMismatchError(self.dimension, model_dimension)
        logger.info(f"Model loaded successfully. Embedding dimension: {model_dimension}")
        return model

    async def open(self) -> None:
        if self.model is None:
            loop = asyncio.get_running_loop()
            self.model = await loop.run_in_executor(None, self._load_model)

    async def close(self) -> None:
        self.model = None

    def _embed_sync(self, text: str, task: str) -> Sequence[float]:
        if self.model is None:
            self.model = self._load_model()
        return self.model.encode(text.strip(), convert_to_numpy=True)


class GeminiEmbedder(EmbeddingClient):
    """Hosted embeddings through the Gemini API."""

    def __init__(self, api_key: Optional[str] = None,
                 model_name: str = "models/text-embedding-004", **kwargs):
        super().__init__(**kwargs)
        self.api_key = api_key
        self.model_name = model_name
        self._configured = False

    def _configure(self) -> None:
        if not self.api_key:
            raise ConfigurationError("GEMINI_API_KEY is required for Gemini embeddings")
        if not self._configured:
            genai.configure(api_key=self.api_key)
            self._configured = True

    async def open(self) -> None:
        self._configure()
        logger.info(f"Gemini embedder ready: {self.model_name}")

    def _embed_sync(self, text: str, task: str) -> Sequence[float]:
        self._configure()
        result = genai.embed_content(model=self.model_name, content=text, task_type=task)
        return result["embedding"]


def build_embedder(config, rate_limiter: Optional[TokenBucket] = None) -> EmbeddingClient:
    """Create the embedding client selected by an ``EmbeddingConfig``."""
    common = dict(dimension=config.dimension, timeout=config.timeout, rate_limiter=rate_limiter)
    if config.provider == EmbeddingProvider.GEMINI:
        return GeminiEmbedder(api_key=config.api_key, model_name=config.model_name, **common)
    return SentenceTransformerEmbedder(model_name=config.model_name, **common)
