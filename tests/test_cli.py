"""Tests for the command-line interface, run against fakes."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from config.factory import ServiceContainer
from config.settings import (
    AppConfig,
    DatabaseConfig,
    EmbeddingConfig,
    PipelineConfig,
    VectorIndexConfig,
)
from pipelines import cli
from pipelines.fetcher import STATIC, FetchResult

PAGE = "<html><body><article><h1>Refunds</h1><p>Refunds take 5-10 business days.</p></article></body></html>"


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    """Keep the CLI from reconfiguring the root logger during tests."""
    setup = MagicMock()
    monkeypatch.setattr(cli, "setup_logging", setup)
    return setup


@pytest.fixture
def container(tmp_path, fake_embedder_class, fake_llm_class):
    config = AppConfig(
        database=DatabaseConfig(url=f"sqlite:///{tmp_path / 'docs.db'}"),
        embedding=EmbeddingConfig(dimension=4),
        vector_index=VectorIndexConfig(path=str(tmp_path / "vectors.db")),
        pipeline=PipelineConfig(scrape_delay=0, embed_batch_delay=0, sources_dir=str(tmp_path))
    )
    fetcher = MagicMock()
    fetcher.fetch = AsyncMock(side_effect=lambda url, use_browser=False: FetchResult(
        url=url, html=PAGE, method=STATIC, status_code=200
    ))
    fetcher.close = AsyncMock()
    return ServiceContainer(
        config,
        embedder=fake_embedder_class(),
        llm=fake_llm_class(reply="Refunds usually take 5-10 business days."),
        fetcher=fetcher
    )


class TestParser:

    def test_subcommands(self):
        parser = cli.build_parser()

        args = parser.parse_args(["full", "--url", "https://a.test/", "--url", "https://b.test/", "--limit", "7"])
        assert args.command == "full"
        assert args.url == ["https://a.test/", "https://b.test/"]
        assert args.limit == 7

        args = parser.parse_args(["reconcile", "--repair"])
        assert args.repair

    def test_missing_command_is_usage_error(self):
        with pytest.raises(SystemExit) as exc_info:
            cli.main([])
        assert exc_info.value.code == 2

    def test_reset_index_requires_confirmation(self):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["reset-index"])
        assert exc_info.value.code == 2


class TestCommands:
    """Commands run end to end against a temporary database."""

    def test_full_pipeline(self, container, capsys):
        status = cli.main(["full", "--url", "https://docs.stripe.com/refunds"], container=container)

        output = capsys.readouterr().out
        assert status == 0
        assert "scrape: 1 succeeded, 0 failed, 0 skipped" in output
        assert "chunk: 1 succeeded" in output
        assert "embed: 1 succeeded" in output

    def test_stages_individually_then_stats(self, container, capsys):
        assert cli.main(["scrape", "--url", "https://docs.stripe.com/refunds"], container=container) == 0
        assert cli.main(["chunk"], container=container) == 0
        assert cli.main(["embed", "--limit", "10"], container=container) == 0
        capsys.readouterr()

        assert cli.main(["stats"], container=container) == 0

        stats = json.loads(capsys.readouterr().out)
        assert stats["documents"]["processed"] == 1
        assert stats["chunks"]["embedded"] == 1
        assert stats["vectors"]["count"] == 1

    def test_scrape_from_source_file(self, container, tmp_path, capsys):
        (tmp_path / "acme.yaml").write_text("urls:\n  - https://docs.acme.test/a\n  - https://docs.acme.test/b\n")

        status = cli.main(["scrape", "--source", "acme"], container=container)

        assert status == 0
        assert "scrape: 2 succeeded" in capsys.readouterr().out

    def test_unknown_source_fails(self, container):
        assert cli.main(["scrape", "--source", "missing"], container=container) == 1

    def test_ask_after_indexing(self, container, capsys):
        cli.main(["full", "--url", "https://docs.stripe.com/refunds"], container=container)
        capsys.readouterr()

        status = cli.main(["ask", "How long do refunds take?"], container=container)

        output = capsys.readouterr().out
        assert status == 0
        assert "Refunds usually take 5-10 business days." in output
        assert "https://docs.stripe.com/refunds" in output
        assert "Session:" in output

    def test_reconcile_and_reset(self, container, capsys):
        cli.main(["full", "--url", "https://docs.stripe.com/refunds"], container=container)
        capsys.readouterr()

        assert cli.main(["reconcile"], container=container) == 0
        assert json.loads(capsys.readouterr().out)["consistent"] is True

        assert cli.main(["reset-index", "--yes"], container=container) == 0
        assert "Removed 1 vectors" in capsys.readouterr().out

        assert cli.main(["retry"], container=container) == 0
        assert json.loads(capsys.readouterr().out) == {"documents": 0, "chunks": 0}

    def test_check_reports_connections(self, container, capsys):
        assert cli.main(["check"], container=container) == 0
        assert json.loads(capsys.readouterr().out) == {"embedding": True, "llm": True}

    def test_check_fails_when_a_service_is_down(self, container, capsys, fake_llm_class):
        container.llm = fake_llm_class(error=RuntimeError("quota exceeded"))

        assert cli.main(["check"], container=container) == 1
        assert json.loads(capsys.readouterr().out) == {"embedding": True, "llm": False}

    def test_metrics_flag(self, container, capsys):
        cli.main(["--metrics", "stats"], container=container)
        assert "docsage_answers_total" in capsys.readouterr().out

    def test_logging_configured_from_flags(self, container, quiet_logging):
        cli.main(["--log-level", "DEBUG", "--json-logs", "stats"], container=container)

        kwargs = quiet_logging.call_args.kwargs
        assert kwargs["level"] == "DEBUG"
        assert kwargs["use_json"] is True
