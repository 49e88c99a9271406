"""Observability package for DocSage."""

from .logging import setup_logging, get_logger, log_performance
from .metrics import docsage_registry, render_metrics

__all__ = [
    'setup_logging',
    'get_logger',
    'log_performance',
    'docsage_registry',
    'render_metrics'
]
