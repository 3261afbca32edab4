"""Tests for CLI argument parsing and the offline subcommands."""

from __future__ import annotations

import sys
from unittest.mock import patch

import pytest

import scripts.cli as cli
from inbox_triage.config.settings import InboxTriageSettings
from inbox_triage.core.models import Category, ClassificationMethod, ClassifiedRecord
from inbox_triage.storage.index import MessageIndex


def _run_main(argv: list[str], settings: InboxTriageSettings) -> None:
    with (
        patch.object(sys, "argv", ["cli.py", *argv]),
        patch.object(cli, "InboxTriageSettings", return_value=settings),
    ):
        cli.main()


class TestParser:
    """Test subcommand flags and validation."""

    def test_run_once_defaults(self) -> None:
        args = cli.build_parser().parse_args(["run-once"])
        assert args.command == "run-once"
        assert args.days is None

    def test_run_once_days(self) -> None:
        assert cli.build_parser().parse_args(["run-once", "--days", "7"]).days == 7

    def test_negative_days_rejected(self) -> None:
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["run-once", "--days", "-1"])

    def test_serve_flags(self) -> None:
        args = cli.build_parser().parse_args(["serve", "--port", "9000", "--watch"])
        assert args.port == 9000
        assert args.host is None
        assert args.watch

    def test_zero_port_rejected(self) -> None:
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["serve", "--port", "0"])

    def test_search_flags(self) -> None:
        args = cli.build_parser().parse_args(
            ["search", "demo", "--folder", "INBOX", "--category", "Interested", "--page", "2"]
        )
        assert args.query == "demo"
        assert args.folder == "INBOX"
        assert args.category == "Interested"
        assert args.size == 20
        assert args.page == 2

    def test_search_without_query(self) -> None:
        assert cli.build_parser().parse_args(["search"]).query is None

    def test_categorize_flags(self) -> None:
        args = cli.build_parser().parse_args(
            ["categorize", "--subject", "Hi", "--from", "a@b.c", "--rules-only"]
        )
        assert args.sender == "a@b.c"
        assert args.rules_only
        assert args.body == ""


class TestMain:
    """Test subcommands that need no mailbox connection."""

    def test_no_command_exits(self, tmp_settings: InboxTriageSettings) -> None:
        with pytest.raises(SystemExit) as exc:
            _run_main([], tmp_settings)
        assert exc.value.code == 1

    def test_categorize_rules_only(
        self, tmp_settings: InboxTriageSettings, capsys: pytest.CaptureFixture[str]
    ) -> None:
        _run_main(
            ["categorize", "--subject", "Auto reply", "--body", "I am away until Monday",
             "--rules-only"],
            tmp_settings,
        )
        out = capsys.readouterr().out
        assert "Out of Office" in out
        assert "rule_fallback" in out

    def test_search_and_stats(
        self,
        tmp_settings: InboxTriageSettings,
        record_factory,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        tmp_settings.ensure_directories()
        with MessageIndex(tmp_settings.database_path) as index:
            index.upsert(record_factory(1, subject="Budget review"))
            index.upsert(
                ClassifiedRecord(
                    record=record_factory(2, subject="Demo request"),
                    category=Category.INTERESTED,
                    method=ClassificationMethod.ORACLE,
                    confidence=0.9,
                )
            )

        _run_main(["search", "demo"], tmp_settings)
        out = capsys.readouterr().out
        assert "1 match(es)" in out
        assert "Demo request" in out
        assert "Interested" in out

        _run_main(["stats"], tmp_settings)
        out = capsys.readouterr().out
        assert "Total documents: 2" in out
        assert "Interested: 1" in out
        assert "(unclassified): 1" in out

    def test_failure_exits_nonzero(
        self, tmp_settings: InboxTriageSettings, capsys: pytest.CaptureFixture[str]
    ) -> None:
        with (
            patch.object(cli, "TriagePipeline") as pipeline_cls,
            pytest.raises(SystemExit) as exc,
        ):
            pipeline_cls.return_value.run_once.side_effect = RuntimeError("no route to host")
            _run_main(["run-once"], tmp_settings)
        assert exc.value.code == 1
        assert "no route to host" in capsys.readouterr().err
