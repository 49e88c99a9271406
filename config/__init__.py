"""Configuration module for DocSage.

Environment-driven settings for the store, embeddings, vector index,
generation model, fetching, pipeline cadence and answering. The service
container lives in :mod:`config.factory`.
"""

from .settings import (
    AppConfig,
    DatabaseConfig,
    EmbeddingConfig,
    EmbeddingProvider,
    VectorIndexConfig,
    LLMConfig,
    FetchConfig,
    PipelineConfig,
    AnswerConfig,
    EnrichmentConfig,
    LoggingConfig
)

__all__ = [
    'AppConfig',
    'DatabaseConfig',
    'EmbeddingConfig',
    'EmbeddingProvider',
    'VectorIndexConfig',
    'LLMConfig',
    'FetchConfig',
    'PipelineConfig',
    'AnswerConfig',
    'EnrichmentConfig',
    'LoggingConfig'
]
