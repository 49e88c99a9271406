"""Application configuration for DocSage.

Every section is a pydantic model with a ``from_env()`` constructor, so
tests can build configurations directly while deployments use environment
variables.
"""

import os
from enum import Enum
from pathlib import Path
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

DEFAULT_SOURCES_DIR = str(Path(__file__).resolve().parent.parent / "sources")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str) -> List[str]:
    value = os.getenv(name, "")
    return value.split() if value.strip() else []


class EmbeddingProvider(str, Enum):
    """Supported embedding backends."""
    SENTENCE_TRANSFORMERS = "sentence-transformers"
    GEMINI = "gemini"


DEFAULT_EMBEDDING_MODELS = {
    EmbeddingProvider.SENTENCE_TRANSFORMERS: "sentence-transformers/all-mpnet-base-v2",
    EmbeddingProvider.GEMINI: "models/text-embedding-004",
}


class DatabaseConfig(BaseModel):
    """Document store configuration."""
    url: str = Field(default="sqlite:///data/docsage.db", description="SQLAlchemy database URL")
    echo: bool = Field(default=False, description="Log SQL statements")

    @classmethod
    def from_env(cls) -> 'DatabaseConfig':
        return cls(
            url=os.getenv('DATABASE_URL', 'sqlite:///data/docsage.db'),
            echo=_env_bool('DB_ECHO', False)
        )


class EmbeddingConfig(BaseModel):
    """Embedding client configuration."""
    provider: EmbeddingProvider = Field(default=EmbeddingProvider.SENTENCE_TRANSFORMERS)
    model: Optional[str] = Field(default=None, description="Model name; provider default when unset")
    dimension: int = Field(default=768, gt=0, description="Vector dimension the index expects")
    api_key: Optional[str] = Field(default=None, description="API key for hosted providers")
    timeout: float = Field(default=30.0, gt=0, description="Per-call timeout in seconds")
    calls_per_second: float = Field(default=2.0, gt=0, description="Rate limit for embedding calls")

    @property
    def model_name(self) -> str:
        return self.model or DEFAULT_EMBEDDING_MODELS[self.provider]

    @classmethod
    def from_env(cls) -> 'EmbeddingConfig':
        return cls(
            provider=EmbeddingProvider(os.getenv('EMBEDDING_PROVIDER', 'sentence-transformers').lower()),
            model=os.getenv('EMBEDDING_MODEL') or None,
            dimension=int(os.getenv('EMBEDDING_DIMENSION', '768')),
            api_key=os.getenv('GEMINI_API_KEY') or None,
            timeout=float(os.getenv('EMBEDDING_TIMEOUT', '30')),
            calls_per_second=float(os.getenv('EMBEDDING_CALLS_PER_SECOND', '2.0'))
        )


class VectorIndexConfig(BaseModel):
    """Vector index configuration."""
    path: str = Field(default="data/vectors.db", description="SQLite file holding the vectors")
    name: str = Field(default="docs", description="Index name (table) inside the file")

    @classmethod
    def from_env(cls) -> 'VectorIndexConfig':
        return cls(
            path=os.getenv('VECTOR_INDEX_PATH', 'data/vectors.db'),
            name=os.getenv('VECTOR_INDEX_NAME', 'docs')
        )


class LLMConfig(BaseModel):
    """Generation model configuration."""
    model: str = Field(default="gemini-2.5-flash")
    api_key: Optional[str] = Field(default=None)
    timeout: float = Field(default=60.0, gt=0)
    calls_per_second: float = Field(default=1.0, gt=0)
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)

    @classmethod
    def from_env(cls) -> 'LLMConfig':
        return cls(
            model=os.getenv('LLM_MODEL', 'gemini-2.5-flash'),
            api_key=os.getenv('GEMINI_API_KEY') or None,
            timeout=float(os.getenv('LLM_TIMEOUT', '60')),
            calls_per_second=float(os.getenv('LLM_CALLS_PER_SECOND', '1.0')),
            temperature=float(os.getenv('LLM_TEMPERATURE', '0.3'))
        )


class FetchConfig(BaseModel):
    """Page fetching configuration."""
    timeout: float = Field(default=15.0, gt=0, description="Static fetch timeout in seconds")
    render_timeout: float = Field(default=45.0, gt=0, description="Browser render timeout in seconds")
    user_agent: str = Field(default=DEFAULT_USER_AGENT)
    browser_enabled: bool = Field(default=True, description="Allow falling back to a headless browser")
    block_private_networks: bool = Field(default=True, description="Refuse hosts on private networks")
    calls_per_second: float = Field(default=0.5, gt=0)

    @classmethod
    def from_env(cls) -> 'FetchConfig':
        return cls(
            timeout=float(os.getenv('FETCH_TIMEOUT', '15')),
            render_timeout=float(os.getenv('RENDER_TIMEOUT', '45')),
            user_agent=os.getenv('FETCH_USER_AGENT', DEFAULT_USER_AGENT),
            browser_enabled=_env_bool('FETCH_BROWSER_ENABLED', True),
            block_private_networks=_env_bool('FETCH_BLOCK_PRIVATE_NETWORKS', True),
            calls_per_second=float(os.getenv('FETCH_CALLS_PER_SECOND', '0.5'))
        )


class PipelineConfig(BaseModel):
    """Chunking, embedding batch and scraping cadence."""
    chunk_size: int = Field(default=1000, gt=0)
    chunk_overlap: int = Field(default=200, ge=0)
    embed_batch_size: int = Field(default=5, gt=0, description="Concurrent embedding calls per sub-batch")
    embed_batch_delay: float = Field(default=1.0, ge=0, description="Pause between sub-batches in seconds")
    embed_limit: int = Field(default=100, gt=0, description="Pending chunks taken per embed run")
    scrape_delay: float = Field(default=2.0, ge=0, description="Pause between scraped URLs in seconds")
    source: str = Field(default="stripe-docs", description="Default source definition name")
    sources_dir: str = Field(default=DEFAULT_SOURCES_DIR)

    @model_validator(mode='after')
    def check_overlap(self) -> 'PipelineConfig':
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        return self

    @classmethod
    def from_env(cls) -> 'PipelineConfig':
        return cls(
            chunk_size=int(os.getenv('CHUNK_SIZE', '1000')),
            chunk_overlap=int(os.getenv('CHUNK_OVERLAP', '200')),
            embed_batch_size=int(os.getenv('EMBED_BATCH_SIZE', '5')),
            embed_batch_delay=float(os.getenv('EMBED_BATCH_DELAY', '1.0')),
            embed_limit=int(os.getenv('EMBED_LIMIT', '100')),
            scrape_delay=float(os.getenv('SCRAPE_DELAY', '2.0')),
            source=os.getenv('PIPELINE_SOURCE', 'stripe-docs'),
            sources_dir=os.getenv('SOURCES_DIR', DEFAULT_SOURCES_DIR)
        )


class AnswerConfig(BaseModel):
    """Retrieval and prompting parameters."""
    top_k: int = Field(default=5, ge=1)
    min_score: float = Field(default=0.5, description="Minimum cosine similarity for a hit to be used")
    history_turns: int = Field(default=5, ge=0)
    product_name: str = Field(default="Stripe", description="Product the assistant answers about")

    @field_validator('min_score')
    @classmethod
    def check_min_score(cls, value: float) -> float:
        if not -1.0 <= value <= 1.0:
            raise ValueError("min_score must lie within [-1, 1]")
        return value

    @classmethod
    def from_env(cls) -> 'AnswerConfig':
        return cls(
            top_k=int(os.getenv('ANSWER_TOP_K', '5')),
            min_score=float(os.getenv('ANSWER_MIN_SCORE', '0.5')),
            history_turns=int(os.getenv('ANSWER_HISTORY_TURNS', '5')),
            product_name=os.getenv('ANSWER_PRODUCT_NAME', 'Stripe')
        )


class EnrichmentConfig(BaseModel):
    """Optional capability enrichment over an MCP stdio server."""
    command: Optional[str] = Field(default=None, description="Executable of the MCP server; unset disables enrichment")
    args: List[str] = Field(default_factory=list)
    tool: str = Field(default="search_docs", description="Tool invoked with the user query")
    timeout: float = Field(default=10.0, gt=0)

    @property
    def enabled(self) -> bool:
        return bool(self.command)

    @classmethod
    def from_env(cls) -> 'EnrichmentConfig':
        return cls(
            command=os.getenv('ENRICHMENT_COMMAND') or None,
            args=_env_list('ENRICHMENT_ARGS'),
            tool=os.getenv('ENRICHMENT_TOOL', 'search_docs'),
            timeout=float(os.getenv('ENRICHMENT_TIMEOUT', '10'))
        )


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    use_json: bool = Field(default=False)
    log_file: Optional[str] = Field(default=None)

    @classmethod
    def from_env(cls) -> 'LoggingConfig':
        return cls(
            level=os.getenv('LOG_LEVEL', 'INFO'),
            use_json=_env_bool('LOG_JSON', False),
            log_file=os.getenv('LOG_FILE') or None
        )


class AppConfig(BaseModel):
    """Complete application configuration."""
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    vector_index: VectorIndexConfig = Field(default_factory=VectorIndexConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    fetch: FetchConfig = Field(default_factory=FetchConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    answer: AnswerConfig = Field(default_factory=AnswerConfig)
    enrichment: EnrichmentConfig = Field(default_factory=EnrichmentConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_env(cls) -> 'AppConfig':
        """Create configuration from environment variables."""
        return cls(
            database=DatabaseConfig.from_env(),
            embedding=EmbeddingConfig.from_env(),
            vector_index=VectorIndexConfig.from_env(),
            llm=LLMConfig.from_env(),
            fetch=FetchConfig.from_env(),
            pipeline=PipelineConfig.from_env(),
            answer=AnswerConfig.from_env(),
            enrichment=EnrichmentConfig.from_env(),
            logging=LoggingConfig.from_env()
        )
