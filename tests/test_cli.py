"""Tests for the command-line entry point."""

from unittest.mock import patch

import pytest

from season_points.__main__ import main, parse_args


class TestParseArgs:
    def test_ingest(self) -> None:
        assert parse_args(["ingest"]).command == "ingest"

    def test_recalc_defaults(self) -> None:
        args = parse_args(["recalc"])
        assert args.cursor == 0
        assert args.limit is None
        assert args.fast is False
        assert args.all is False

    def test_recalc_options(self) -> None:
        args = parse_args(["recalc", "--cursor", "250", "--limit", "100", "--fast", "--all"])
        assert (args.cursor, args.limit, args.fast, args.all) == (250, 100, True, True)

    def test_rewards_address(self) -> None:
        assert parse_args(["rewards", "--address", "0xabc"]).address == "0xabc"

    def test_jobs(self) -> None:
        assert parse_args(["jobs"]).command == "jobs"

    def test_command_required(self) -> None:
        with pytest.raises(SystemExit):
            parse_args([])


class TestMain:
    def test_configuration_error_exit_code(self, clean_env: pytest.MonkeyPatch) -> None:
        assert main(["ingest"]) == 2

    def test_prints_json_result(self, clean_env: pytest.MonkeyPatch, capsys) -> None:
        clean_env.setenv("UNIV3_SUBGRAPH_URL", "https://v3.example")

        async def fake_ingest(settings):
            return {"season_id": settings.season.season_id, "ingested_wallets": 3}

        with patch("season_points.__main__._run_ingest", side_effect=fake_ingest):
            assert main(["ingest"]) == 0

        out = capsys.readouterr().out
        assert '"ingested_wallets": 3' in out
        assert '"season_id": "season-1"' in out

    def test_jobs_requires_a_swap_feed(self, clean_env: pytest.MonkeyPatch) -> None:
        assert main(["jobs"]) == 2

    def test_jobs_prints_run_result(self, clean_env: pytest.MonkeyPatch, capsys) -> None:
        clean_env.setenv("UNIV2_SUBGRAPH_URL", "https://v2.example")

        async def fake_jobs(settings):
            return {"season_id": settings.season.season_id, "ingest_stopped_reason": "source_idle"}

        with patch("season_points.__main__._run_jobs", side_effect=fake_jobs):
            assert main(["jobs"]) == 0

        assert '"ingest_stopped_reason": "source_idle"' in capsys.readouterr().out
