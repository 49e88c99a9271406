"""Prometheus metrics for the ingestion pipeline and the answer engine."""

from prometheus_client import Counter, Histogram, generate_latest
from prometheus_client.core import CollectorRegistry

# Custom registry so tests and embedding applications don't collide with the default one
docsage_registry = CollectorRegistry()

pages_fetched = Counter(
    'docsage_pages_fetched_total',
    'Pages fetched, by fetch method and outcome',
    ['method', 'outcome'],
    registry=docsage_registry
)

documents_ingested = Counter(
    'docsage_documents_ingested_total',
    'Documents run through segmentation, by outcome',
    ['outcome'],
    registry=docsage_registry
)

chunks_created = Counter(
    'docsage_chunks_created_total',
    'Chunks persisted by the indexer',
    registry=docsage_registry
)

embeddings_total = Counter(
    'docsage_embeddings_total',
    'Chunk embedding attempts, by outcome',
    ['outcome'],
    registry=docsage_registry
)

answers_total = Counter(
    'docsage_answers_total',
    'Answer engine requests, by outcome',
    ['outcome'],
    registry=docsage_registry
)

answer_duration = Histogram(
    'docsage_answer_duration_seconds',
    'End-to-end answer latency in seconds',
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
    registry=docsage_registry
)

enrichment_total = Counter(
    'docsage_enrichment_total',
    'Capability enrichment attempts, by outcome',
    ['outcome'],
    registry=docsage_registry
)


def render_metrics() -> str:
    """Return the current metrics in Prometheus text exposition format."""
    return generate_latest(docsage_registry).decode("utf-8")
