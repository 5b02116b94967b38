"""
Tests for the command line interface.
"""

import json

import pytest

from dayhot.cli import build_options, build_parser, cmd_counts, cmd_feeds, main


def parse(*argv):
    return build_parser().parse_args(list(argv))


class TestCollectOptions:

    def test_defaults_use_per_source_budgets(self, settings):
        opts = build_options(parse("collect"), settings)

        assert opts.max_results is None
        assert opts.continue_on_error
        assert not opts.dry_run
        assert len(opts.sources) == 5

    def test_flags(self, settings):
        opts = build_options(
            parse(
                "collect",
                "--sources", "arxiv,github",
                "--max-results", "5",
                "--timeout", "120",
                "--last-12h",
                "--fail-fast",
                "--dry-run",
                "--verbose",
            ),
            settings,
        )

        assert opts.sources == ("arxiv", "github")
        assert opts.max_results == 5
        assert opts.source_timeout == 120
        assert opts.lookback_hours == 12
        assert not opts.continue_on_error
        assert opts.dry_run
        assert opts.verbose

    def test_uniform_config_uses_default_budget(self, settings):
        opts = build_options(parse("collect", "--uniform-config"), settings)
        assert opts.max_results == settings.collection.default_max_results

    def test_hours_back(self, settings):
        opts = build_options(parse("collect", "--hours-back", "6"), settings)
        assert opts.lookback_hours == 6


class TestCommands:

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "usage" in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_feeds_import_list_and_counts(self, settings, tmp_path, capsys):
        feed_file = tmp_path / "feeds.json"
        feed_file.write_text(json.dumps([
            {"name": "Blog A", "url": "https://a.example.com/rss", "category": "AI News"},
            {"name": "Blog B", "url": "https://b.example.com/rss"},
        ]))

        assert await cmd_feeds(parse("feeds", "import", str(feed_file)), settings) == 0
        assert "Imported 2 feeds (2 new)" in capsys.readouterr().out

        assert await cmd_feeds(parse("feeds", "list"), settings) == 0
        listing = capsys.readouterr().out
        assert "Blog A" in listing and "Blog B" in listing

        assert await cmd_counts(parse("counts"), settings) == 0
        assert "Total: 0" in capsys.readouterr().out
