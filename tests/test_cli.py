"""Tests for the command-line interface."""

import json
from unittest.mock import patch

import pytest

from savings_pipeline.cli.__main__ import (
    build_parser,
    cmd_override,
    cmd_partitions,
    cmd_reset_batch,
    cmd_run,
    cmd_validate_audit,
)
from savings_pipeline.models.pipeline_batch import PipelineBatch


def test_run_arguments():
    args = build_parser().parse_args(["run", "a.json", "b.json", "--stop-after", "frn_matching", "--no-accumulate"])
    assert args.command == "run"
    assert args.files == ["a.json", "b.json"]
    assert args.stop_after == "frn_matching"
    assert args.no_accumulate is True
    assert args.batch_id is None


def test_rebuild_cannot_stop_after_ingestion():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["rebuild", "--stop-after", "json_ingestion"])


def test_override_arguments():
    args = build_parser().parse_args(["override", "add", "Chase", "124579", "--confidence", "0.9"])
    assert (args.override_command, args.scraped_name, args.frn, args.confidence) == ("add", "Chase", "124579", 0.9)
    assert args.operator == "anonymous"


def test_override_requires_subcommand():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["override"])


async def test_run_and_validate_commands(test_session_factory, seeded_reference, write_product_file, capsys):
    """`run` prints the batch result and `validate-audit` its report."""
    path = write_product_file(
        "moneyfacts",
        "easy_access",
        [{"productId": "mf-1", "bankName": "Santander UK plc", "accountType": "easy_access", "aerRate": 4.5}],
    )
    parser = build_parser()

    with patch("savings_pipeline.cli.__main__.get_session_factory", return_value=test_session_factory):
        code = await cmd_run(parser.parse_args(["run", str(path), "--batch-id", "batch-cli"]))
        assert code == 0
        result = json.loads(capsys.readouterr().out)
        assert result["status"] == "completed"
        assert result["final_product_count"] == 1

        code = await cmd_validate_audit(parser.parse_args(["validate-audit", "batch-cli", "--json"]))
        report = json.loads(capsys.readouterr().out)
    assert code == 0
    assert report["summary"]["valid"] is True

    with patch("savings_pipeline.cli.__main__.get_session_factory", return_value=test_session_factory):
        await cmd_partitions(parser.parse_args(["partitions"]))
    out = capsys.readouterr().out
    assert "moneyfacts" in out
    assert out.strip().splitlines()[-1].split() == ["total", "1"]


async def test_override_command(test_session_factory, seeded_reference):
    parser = build_parser()
    with patch("savings_pipeline.cli.__main__.get_session_factory", return_value=test_session_factory):
        assert await cmd_override(parser.parse_args(["override", "add", "Santander Online", "106054"])) == 0
        assert await cmd_override(parser.parse_args(["override", "remove", "Santander Online"])) == 0


async def test_reset_batch_command(test_session_factory, capsys):
    async with test_session_factory() as session, session.begin():
        session.add(PipelineBatch(batch_id="batch-stuck", status="running", stages_completed=[]))

    parser = build_parser()
    with patch("savings_pipeline.cli.__main__.get_session_factory", return_value=test_session_factory):
        assert await cmd_reset_batch(parser.parse_args(["reset-batch", "batch-stuck"])) == 0
        assert await cmd_reset_batch(parser.parse_args(["reset-batch", "batch-stuck"])) == 1
    captured = capsys.readouterr()
    assert "Batch batch-stuck marked failed" in captured.out
    assert "No running batch batch-stuck" in captured.err
