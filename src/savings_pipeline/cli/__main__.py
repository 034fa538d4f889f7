"""CLI entry point: python -m savings_pipeline.cli <command>"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

import structlog

from savings_pipeline.audit.trail_validator import AuditTrailValidator, format_report
from savings_pipeline.config.pipeline import ConfigProvider
from savings_pipeline.config.settings import get_settings
from savings_pipeline.db.engine import dispose_engine
from savings_pipeline.db.session import get_session_factory
from savings_pipeline.errors import PipelineError
from savings_pipeline.frn.reference import (
    ManualOverrideEntry,
    add_manual_override,
    load_reference_data,
    load_reference_file,
    remove_manual_override,
)
from savings_pipeline.frn.research_queue import list_research_queue
from savings_pipeline.ingestion.accumulation import AccumulationStore
from savings_pipeline.logging_config import configure_logging
from savings_pipeline.worker.orchestrator import PipelineStage, rebuild_from_raw_data, reset_batch, run_pipeline

STAGES = [stage.value for stage in PipelineStage]


async def _load_config(session_factory):
    settings = get_settings()
    provider = ConfigProvider(
        session_factory,
        yaml_path=settings.pipeline_config_path,
        ttl_seconds=settings.config_cache_ttl_seconds,
    )
    return await provider.get()


async def cmd_run(args: argparse.Namespace) -> int:
    settings = get_settings()
    session_factory = get_session_factory()
    config = await _load_config(session_factory)
    result = await run_pipeline(
        [Path(f) for f in args.files],
        session_factory,
        config,
        stop_after_stage=args.stop_after,
        accumulate_raw=not args.no_accumulate,
        dead_letter_dir=settings.dead_letter_dir,
        batch_id=args.batch_id,
    )
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.status == "completed" else 1


async def cmd_rebuild(args: argparse.Namespace) -> int:
    session_factory = get_session_factory()
    config = await _load_config(session_factory)
    result = await rebuild_from_raw_data(
        session_factory, config, batch_id=args.batch_id, stop_after_stage=args.stop_after
    )
    print(json.dumps(result.to_dict(), indent=2))
    return 0 if result.status == "completed" else 1


async def cmd_validate_audit(args: argparse.Namespace) -> int:
    session_factory = get_session_factory()
    config = await _load_config(session_factory)
    report = await AuditTrailValidator(session_factory, config.audit).validate_batch(args.batch_id)
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print(format_report(report))
    return 0 if report.valid else 1


async def cmd_partitions(args: argparse.Namespace) -> int:
    async with get_session_factory()() as session:
        store = AccumulationStore(session)
        combinations = await store.list_combinations()
        total = await store.total_count()
    for partition in combinations:
        print(f"{partition.source:<20} {partition.method:<20} {partition.count:>8}")
    print(f"{'total':<41} {total:>8}")
    return 0


async def cmd_override(args: argparse.Namespace) -> int:
    session_factory = get_session_factory()
    config = await _load_config(session_factory)
    normalization = config.frn_matching.normalization
    log = structlog.get_logger()

    async with session_factory() as session:
        if args.override_command == "add":
            entry = ManualOverrideEntry(
                scraped_name=args.scraped_name,
                frn=args.frn,
                firm_name=args.firm_name,
                confidence_score=args.confidence,
                notes=args.notes,
            )
            cache_rows = await add_manual_override(session, entry, normalization, operator=args.operator)
            log.info("manual_override_added", scraped_name=args.scraped_name, frn=args.frn, cache_rows=cache_rows)
        else:
            await remove_manual_override(session, args.scraped_name, normalization, operator=args.operator)
            log.info("manual_override_removed", scraped_name=args.scraped_name)
    return 0


async def cmd_reference(args: argparse.Namespace) -> int:
    session_factory = get_session_factory()
    config = await _load_config(session_factory)
    data = load_reference_file(Path(args.file))
    async with session_factory() as session:
        summary = await load_reference_data(
            session, data, config.frn_matching.normalization, operator=args.operator
        )
    print(json.dumps(summary, indent=2))
    return 0


async def cmd_research_queue(args: argparse.Namespace) -> int:
    async with get_session_factory()() as session:
        items = await list_research_queue(session, status=args.status, limit=args.limit)
    for item in items:
        best = f"{item.best_candidate_frn} ({item.best_candidate_confidence})" if item.best_candidate_frn else "-"
        print(f"{item.occurrence_count:>5}  {item.normalized_name:<40} {best}")
    return 0


async def cmd_reset_batch(args: argparse.Namespace) -> int:
    if await reset_batch(get_session_factory(), args.batch_id, operator=args.operator):
        print(f"Batch {args.batch_id} marked failed")
        return 0
    print(f"No running batch {args.batch_id}", file=sys.stderr)
    return 1


COMMANDS = {
    "run": cmd_run,
    "rebuild": cmd_rebuild,
    "validate-audit": cmd_validate_audit,
    "partitions": cmd_partitions,
    "override": cmd_override,
    "reference": cmd_reference,
    "research-queue": cmd_research_queue,
    "reset-batch": cmd_reset_batch,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="savings_pipeline.cli",
        description="Savings product pipeline CLI",
    )
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Ingest product files and run the pipeline")
    run_parser.add_argument("files", nargs="+", help="Product JSON files, one (source, method) partition each")
    run_parser.add_argument("--stop-after", choices=STAGES, default=None, help="Last stage to run")
    run_parser.add_argument(
        "--no-accumulate",
        action="store_true",
        help="Clear every partition before ingesting",
    )
    run_parser.add_argument("--batch-id", default=None, help="Explicit batch id (generated by default)")

    rebuild_parser = subparsers.add_parser("rebuild", help="Re-run FRN matching and deduplication over stored products")
    rebuild_parser.add_argument("--stop-after", choices=STAGES[1:], default=None)
    rebuild_parser.add_argument("--batch-id", default=None)

    validate_parser = subparsers.add_parser("validate-audit", help="Validate the audit trail of one batch")
    validate_parser.add_argument("batch_id")
    validate_parser.add_argument("--json", action="store_true", help="Print the report as JSON")

    subparsers.add_parser("partitions", help="List (source, method) partitions with product counts")

    override_parser = subparsers.add_parser("override", help="Manage FRN manual overrides")
    override_sub = override_parser.add_subparsers(dest="override_command", required=True)
    add_parser = override_sub.add_parser("add", help="Create or replace an override")
    add_parser.add_argument("scraped_name")
    add_parser.add_argument("frn")
    add_parser.add_argument("--firm-name", default=None)
    add_parser.add_argument("--confidence", type=float, default=1.0)
    add_parser.add_argument("--notes", default=None)
    add_parser.add_argument("--operator", default="anonymous")
    remove_parser = override_sub.add_parser("remove", help="Delete an override")
    remove_parser.add_argument("scraped_name")
    remove_parser.add_argument("--operator", default="anonymous")

    reference_parser = subparsers.add_parser("reference", help="Manage FRN reference data")
    reference_sub = reference_parser.add_subparsers(dest="reference_command", required=True)
    load_parser = reference_sub.add_parser("load", help="Load institutions, brands and overrides from YAML/JSON")
    load_parser.add_argument("file")
    load_parser.add_argument("--operator", default="anonymous")

    queue_parser = subparsers.add_parser("research-queue", help="List names awaiting FRN research")
    queue_parser.add_argument("--status", default="pending")
    queue_parser.add_argument("--limit", type=int, default=50)

    reset_parser = subparsers.add_parser("reset-batch", help="Mark an abandoned running batch as failed")
    reset_parser.add_argument("batch_id")
    reset_parser.add_argument("--operator", default="anonymous")

    return parser


async def _dispatch(args: argparse.Namespace) -> int:
    try:
        return await COMMANDS[args.command](args)
    finally:
        await dispose_engine()


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    settings = get_settings()
    configure_logging(json_output=settings.log_json, log_level=settings.log_level)

    try:
        code = asyncio.run(_dispatch(args))
    except PipelineError as e:
        structlog.get_logger().error("command_failed", command=args.command, error=str(e))
        sys.exit(2)
    sys.exit(code)


if __name__ == "__main__":
    main()
