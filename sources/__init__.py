"""Sources package for DocSage.

Named URL lists to scrape, stored as YAML next to this module.
"""

from .loader import SourceConfig, SourceLoader

__all__ = [
    'SourceConfig',
    'SourceLoader'
]
