"""Source configuration loader for DocSage.

A source is a named, explicit list of documentation URLs stored as
``<name>.yaml`` in the sources directory.
"""

import yaml
from pathlib import Path
from typing import Dict, List, Any, Optional
from dataclasses import dataclass, field
import logging

logger = logging.getLogger(__name__)


@dataclass
class SourceConfig:
    """A named list of pages to scrape."""
    name: str
    urls: List[str]
    browser_urls: List[str] = field(default_factory=list)
    use_browser: bool = False
    delay: float = 2.0
    description: Optional[str] = None
    enabled: bool = True

    def __post_init__(self):
        """Validate configuration after initialization."""
        if not self.name:
            raise ValueError("Source name cannot be empty")

        if not self.urls:
            raise ValueError("Source must list at least one URL")

        if self.delay < 0:
            raise ValueError("Delay must not be negative")

        # Keep declared order, drop repeats
        self.urls = list(dict.fromkeys(self.urls))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SourceConfig':
        """Create SourceConfig from dictionary."""
        return cls(
            name=data['name'],
            urls=data['urls'],
            browser_urls=data.get('browser_urls') or [],
            use_browser=data.get('use_browser', False),
            delay=data.get('delay', 2.0),
            description=data.get('description'),
            enabled=data.get('enabled', True)
        )

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'name': self.name,
            'urls': self.urls,
            'use_browser': self.use_browser,
            'delay': self.delay,
            'enabled': self.enabled
        }
        if self.browser_urls:
            result['browser_urls'] = self.browser_urls
        if self.description:
            result['description'] = self.description
        return result


class SourceLoader:
    """Loads source configurations from YAML files."""

    def __init__(self, sources_dir: Optional[Path] = None):
        """Initialize source loader.

        Args:
            sources_dir: Directory containing source YAML files.
                        Defaults to the directory of this module.
        """
        if sources_dir is None:
            sources_dir = Path(__file__).parent

        self.sources_dir = Path(sources_dir)
        self._cache: Dict[str, SourceConfig] = {}
        self._last_modified: Dict[str, float] = {}

    def load_source_config(self, source_name: str) -> Optional[SourceConfig]:
        """Load configuration for a specific source.

        Args:
            source_name: Name of the source (without .yaml extension)

        Returns:
            SourceConfig if found and valid, None otherwise
        """
        yaml_file = self.sources_dir / f"{source_name}.yaml"

        if not yaml_file.exists():
            logger.warning(f"Source configuration not found: {yaml_file}")
            return None

        current_mtime = yaml_file.stat().st_mtime
        if (source_name in self._cache and
                self._last_modified.get(source_name, 0) >= current_mtime):
            return self._cache[source_name]

        try:
            with open(yaml_file, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)

            if not data:
                logger.error(f"Empty or invalid YAML file: {yaml_file}")
                return None

            if data.get('name') not in (None, source_name):
                logger.warning(f"Source name mismatch in {yaml_file}: {data['name']} != {source_name}")
            data['name'] = source_name

            config = SourceConfig.from_dict(data)
            self._cache[source_name] = config
            self._last_modified[source_name] = current_mtime

            logger.info(f"Loaded source configuration: {source_name} ({len(config.urls)} URLs)")
            return config

        except yaml.YAMLError as e:
            logger.error(f"Failed to parse YAML file {yaml_file}: {e}")
            return None
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Invalid source configuration in {yaml_file}: {e}")
            return None

    def load_all_sources(self) -> Dict[str, SourceConfig]:
        """Load all source configurations from the sources directory."""
        sources = {}

        if not self.sources_dir.exists():
            logger.warning(f"Sources directory not found: {self.sources_dir}")
            return sources

        for yaml_file in sorted(self.sources_dir.glob("*.yaml")):
            config = self.load_source_config(yaml_file.stem)
            if config:
                sources[yaml_file.stem] = config

        return sources

    def get_enabled_sources(self) -> Dict[str, SourceConfig]:
        """Get all enabled source configurations."""
        return {name: config for name, config in self.load_all_sources().items() if config.enabled}

