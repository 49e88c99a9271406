"""Pipelines package for DocSage.

Provides fetching, extraction, chunking, scraping and indexing.
"""

from .chunker import RecursiveChunker, Segment, segment
from .extractor import ExtractedPage, extract
from .rate_limit import TokenBucket
from .security import SSRFError, validate_url, check_url_ssrf

__all__ = [
    # Chunker
    'RecursiveChunker',
    'Segment',
    'segment',

    # Extractor
    'ExtractedPage',
    'extract',

    # Rate limiting
    'TokenBucket',

    # URL validation
    'SSRFError',
    'validate_url',
    'check_url_ssrf'
]
