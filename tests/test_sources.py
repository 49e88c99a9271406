"""Tests for source definitions."""

import os
import textwrap

import pytest

from sources.loader import SourceConfig, SourceLoader


def write_source(directory, name, body):
    path = directory / f"{name}.yaml"
    path.write_text(textwrap.dedent(body), encoding="utf-8")
    return path


class TestSourceConfig:

    def test_duplicates_removed_in_order(self):
        config = SourceConfig(name="docs", urls=["https://a", "https://b", "https://a"])
        assert config.urls == ["https://a", "https://b"]

    @pytest.mark.parametrize("kwargs", [
        {"name": "", "urls": ["https://a"]},
        {"name": "docs", "urls": []},
        {"name": "docs", "urls": ["https://a"], "delay": -1},
    ])
    def test_invalid_configs(self, kwargs):
        with pytest.raises(ValueError):
            SourceConfig(**kwargs)

    def test_round_trip_dict(self):
        config = SourceConfig(name="docs", urls=["https://a"], browser_urls=["https://a"], description="Docs")
        assert SourceConfig.from_dict(config.to_dict()) == config


class TestSourceLoader:
    """Test suite for SourceLoader."""

    def test_load_source(self, tmp_path):
        write_source(tmp_path, "acme", """
            name: acme
            description: Acme docs
            delay: 1.5
            urls:
              - https://docs.acme.test/
              - https://docs.acme.test/api
            browser_urls:
              - https://support.acme.test/
        """)

        config = SourceLoader(tmp_path).load_source_config("acme")

        assert config.urls == ["https://docs.acme.test/", "https://docs.acme.test/api"]
        assert config.browser_urls == ["https://support.acme.test/"]
        assert config.delay == 1.5
        assert config.enabled

    def test_missing_source(self, tmp_path):
        assert SourceLoader(tmp_path).load_source_config("nope") is None

    def test_invalid_source(self, tmp_path):
        write_source(tmp_path, "broken", "name: broken\nurls: []\n")
        write_source(tmp_path, "garbage", "urls: [unclosed\n")

        loader = SourceLoader(tmp_path)

        assert loader.load_source_config("broken") is None
        assert loader.load_source_config("garbage") is None

    def test_file_name_wins_over_declared_name(self, tmp_path):
        write_source(tmp_path, "real", "name: other\nurls: [https://a.test/]\n")
        assert SourceLoader(tmp_path).load_source_config("real").name == "real"

    def test_enabled_sources(self, tmp_path):
        write_source(tmp_path, "on", "urls: [https://a.test/]\n")
        write_source(tmp_path, "off", "urls: [https://b.test/]\nenabled: false\n")

        loader = SourceLoader(tmp_path)

        assert set(loader.load_all_sources()) == {"on", "off"}
        assert set(loader.get_enabled_sources()) == {"on"}

    def test_changed_file_reloaded(self, tmp_path):
        path = write_source(tmp_path, "docs", "urls: [https://a.test/]\n")
        loader = SourceLoader(tmp_path)
        assert loader.load_source_config("docs").urls == ["https://a.test/"]

        path.write_text("urls: [https://b.test/]\n", encoding="utf-8")
        stat = path.stat()
        os.utime(path, (stat.st_atime, stat.st_mtime + 10))

        assert loader.load_source_config("docs").urls == ["https://b.test/"]

    def test_bundled_stripe_source(self):
        config = SourceLoader().load_source_config("stripe-docs")

        assert config is not None
        assert len(config.urls) == 12
        assert "https://support.stripe.com/" in config.browser_urls
