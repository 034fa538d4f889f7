"""Pipeline orchestrator: ingestion -> FRN matching -> deduplication.

Stages run strictly in sequence and each commits before the next one
reads.  Every run is tracked as a row in ``pipeline_batches``; a run that
fails mid-way keeps the stages it already committed and its batch row is
marked ``failed`` in a separate transaction.
"""

from __future__ import annotations

import datetime as dt
import enum
import uuid
from dataclasses import asdict, dataclass, field
from pathlib import Path

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from savings_pipeline.audit.recorder import AuditRecorder
from savings_pipeline.config.pipeline import PipelineConfig
from savings_pipeline.dedup.engine import run_deduplication
from savings_pipeline.errors import ConcurrentExecutionError, ConfigurationError, StageExecutionError
from savings_pipeline.frn.service import FRNMatchingService
from savings_pipeline.ingestion.accumulation import AccumulationStore
from savings_pipeline.ingestion.json_loader import ProductFile
from savings_pipeline.ingestion.service import IngestionService, PartitionIngestResult
from savings_pipeline.models.audit_log import AuditLog
from savings_pipeline.models.deduplication_audit import DeduplicationAudit
from savings_pipeline.models.deduplication_group import DeduplicationGroup
from savings_pipeline.models.pipeline_batch import PipelineBatch
from savings_pipeline.worker.persistence import (
    clear_batch_rows,
    load_enriched_products,
    replace_current_products,
)

logger = structlog.get_logger()


class PipelineStage(str, enum.Enum):
    JSON_INGESTION = "json_ingestion"
    FRN_MATCHING = "frn_matching"
    DEDUPLICATION = "deduplication"


SourceDescriptor = Path | ProductFile


@dataclass
class PipelineRunResult:
    batch_id: str
    status: str = "running"
    stages_completed: list[str] = field(default_factory=list)
    files: list[dict] = field(default_factory=list)
    products_processed: int = 0
    products_valid: int = 0
    products_rejected: int = 0
    products_enriched: int = 0
    final_product_count: int | None = None
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def generate_batch_id(now: dt.datetime | None = None) -> str:
    """``batch-YYYYmmddTHHMMSS-<8 hex>``; sortable by start time."""
    now = now or dt.datetime.now(dt.timezone.utc)
    return f"batch-{now:%Y%m%dT%H%M%S}-{uuid.uuid4().hex[:8]}"


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


def _describe(source: SourceDescriptor) -> str:
    if isinstance(source, ProductFile):
        return source.file_name or f"{source.source}/{source.method}"
    return str(source)


def _coerce_stage(stage: PipelineStage | str | None) -> PipelineStage | None:
    if stage is None or isinstance(stage, PipelineStage):
        return stage
    try:
        return PipelineStage(stage)
    except ValueError as e:
        valid = ", ".join(s.value for s in PipelineStage)
        raise ConfigurationError(f"unknown stage {stage!r}; expected one of {valid}") from e


# PostgreSQL advisory lock key serializing batch start across processes
BATCH_START_LOCK_KEY = 7_402_118


async def _expire_stale_batches(session: AsyncSession, stale_minutes: int) -> None:
    """Mark ``running`` batches older than ``stale_minutes`` as failed."""
    if stale_minutes <= 0:
        return
    now = _utcnow()
    cutoff = now - dt.timedelta(minutes=stale_minutes)
    stale = (
        await session.execute(
            select(PipelineBatch).where(PipelineBatch.status == "running", PipelineBatch.started_at < cutoff)
        )
    ).scalars().all()
    for batch in stale:
        logger.warning("stale_batch_expired", batch_id=batch.batch_id, started_at=str(batch.started_at))
        batch.status = "failed"
        batch.error_message = f"abandoned: still running after {stale_minutes} minutes"
        batch.finished_at = now


async def _start_batch(
    session_factory: async_sessionmaker[AsyncSession],
    config: PipelineConfig,
    batch_id: str,
    stop_after_stage: PipelineStage | None,
    accumulate_raw: bool,
    input_files: list[str],
) -> None:
    async with session_factory() as session, session.begin():
        if config.orchestration.concurrent_execution_check:
            if session.bind.dialect.name == "postgresql":
                # Held until commit, so the check and the insert below are atomic
                await session.execute(select(func.pg_advisory_xact_lock(BATCH_START_LOCK_KEY)))
            await _expire_stale_batches(session, config.orchestration.stale_batch_minutes)
            result = await session.execute(
                select(PipelineBatch.batch_id).where(PipelineBatch.status == "running")
            )
            running = result.scalars().first()
            if running is not None:
                raise ConcurrentExecutionError(f"batch {running} is still running")
        values = {
            "status": "running",
            "stop_after_stage": stop_after_stage.value if stop_after_stage else None,
            "accumulate_raw": accumulate_raw,
            "stages_completed": [],
            "input_files": input_files,
            "error_message": None,
            "started_at": _utcnow(),
            "finished_at": None,
        }
        existing = (
            await session.execute(select(PipelineBatch).where(PipelineBatch.batch_id == batch_id))
        ).scalar_one_or_none()
        if existing is None:
            session.add(PipelineBatch(batch_id=batch_id, **values))
        else:
            # Retry of an earlier batch id reuses its row
            for name, value in values.items():
                setattr(existing, name, value)


async def _update_batch(session_factory: async_sessionmaker[AsyncSession], batch_id: str, **values) -> None:
    async with session_factory() as session, session.begin():
        await session.execute(update(PipelineBatch).where(PipelineBatch.batch_id == batch_id).values(**values))


async def reset_batch(
    session_factory: async_sessionmaker[AsyncSession],
    batch_id: str,
    operator: str = "anonymous",
) -> bool:
    """Mark a ``running`` batch as failed so that new batches can start.

    For a batch whose process died before it could record its outcome.
    Returns ``False`` when no running batch has this id.
    """
    async with session_factory() as session, session.begin():
        result = await session.execute(
            update(PipelineBatch)
            .where(PipelineBatch.batch_id == batch_id, PipelineBatch.status == "running")
            .values(status="failed", error_message=f"reset by {operator}", finished_at=_utcnow())
        )
        if not result.rowcount:
            return False
        session.add(AuditLog(action_type="batch_reset", subject=batch_id, operator=operator))
    logger.info("batch_reset", batch_id=batch_id, operator=operator)
    return True


async def _finish_batch(
    session_factory: async_sessionmaker[AsyncSession],
    result: PipelineRunResult,
) -> None:
    await _update_batch(
        session_factory,
        result.batch_id,
        status=result.status,
        stages_completed=list(result.stages_completed),
        products_processed=result.products_processed,
        products_valid=result.products_valid,
        products_rejected=result.products_rejected,
        products_enriched=result.products_enriched,
        final_product_count=result.final_product_count,
        error_message="; ".join(result.errors) or None,
        finished_at=_utcnow(),
    )


async def _ingest_sources(
    sources: list[SourceDescriptor],
    session_factory: async_sessionmaker[AsyncSession],
    config: PipelineConfig,
    result: PipelineRunResult,
    accumulate_raw: bool,
    dead_letter_dir: Path | None,
) -> None:
    log = logger.bind(batch_id=result.batch_id)
    if not accumulate_raw:
        async with session_factory() as session, session.begin():
            cleared = await AccumulationStore(session).clear_all()
        log.info("raw_store_cleared", rows_deleted=cleared)

    service = IngestionService(session_factory, config.ingestion, dead_letter_dir)
    completed = 0
    for source in sources:
        if isinstance(source, ProductFile):
            outcome: PartitionIngestResult = await service.ingest(source, result.batch_id)
        else:
            outcome = await service.ingest_file(Path(source), result.batch_id)

        result.files.append(
            {
                "file": outcome.file_name,
                "status": outcome.status,
                "source": outcome.source,
                "method": outcome.method,
                "total": outcome.total,
                "valid": outcome.valid,
                "file_hash": outcome.file_hash,
                "reason": outcome.reason,
            }
        )
        if outcome.status != "completed":
            result.warnings.append(f"{outcome.file_name}: {outcome.reason}")
            continue
        completed += 1
        result.products_processed += outcome.total
        result.products_valid += outcome.valid
        result.products_rejected += outcome.invalid
        if outcome.corruption_exceeded:
            result.warnings.append(
                f"{outcome.source}/{outcome.method}: {outcome.invalid} of {outcome.total} records invalid, "
                f"above corruption threshold {config.ingestion.data_corruption_threshold}"
            )

    if completed == 0:
        raise StageExecutionError(PipelineStage.JSON_INGESTION.value, "no input file could be ingested")
    log.info(
        "ingestion_complete",
        files=len(sources),
        files_ingested=completed,
        products_processed=result.products_processed,
        products_valid=result.products_valid,
    )


async def _deduplicate(
    session_factory: async_sessionmaker[AsyncSession],
    config: PipelineConfig,
    result: PipelineRunResult,
) -> None:
    async with session_factory() as session:
        products = await load_enriched_products(session)

    dedup_result = run_deduplication(products, config.deduplication, config.frn_matching.normalization)

    async with session_factory() as session, session.begin():
        await clear_batch_rows(session, result.batch_id, DeduplicationAudit, DeduplicationGroup)
        written = await replace_current_products(session, dedup_result, result.batch_id)
        AuditRecorder(session, result.batch_id).record_deduplication(dedup_result)

    result.final_product_count = written
    if dedup_result.fscs_violations:
        result.warnings.extend(dedup_result.fscs_violations)
    logger.info(
        "deduplication_complete",
        batch_id=result.batch_id,
        input_products=dedup_result.input_count,
        unique_business_keys=dedup_result.unique_business_keys,
        duplicate_groups=dedup_result.duplicate_groups,
        products_selected=written,
        products_rejected=dedup_result.rejected_count,
        processing_time_ms=dedup_result.timings.total_ms,
    )


async def _run_downstream_stages(
    session_factory: async_sessionmaker[AsyncSession],
    config: PipelineConfig,
    result: PipelineRunResult,
    stop: PipelineStage | None,
) -> None:
    """FRN matching then deduplication over the whole accumulation store."""
    stats = await FRNMatchingService(session_factory, config.frn_matching).enrich_all(result.batch_id)
    result.products_enriched = stats.enriched
    if not result.products_processed:
        result.products_processed = stats.processed
    result.stages_completed.append(PipelineStage.FRN_MATCHING.value)
    await _update_batch(session_factory, result.batch_id, stages_completed=list(result.stages_completed))
    if stop == PipelineStage.FRN_MATCHING:
        return

    await _deduplicate(session_factory, config, result)
    result.stages_completed.append(PipelineStage.DEDUPLICATION.value)


async def _fail(
    session_factory: async_sessionmaker[AsyncSession],
    result: PipelineRunResult,
    error: Exception,
) -> None:
    log = logger.bind(batch_id=result.batch_id)
    log.error("pipeline_failed", error=str(error), stages_completed=result.stages_completed, exc_info=True)
    result.status = "failed"
    result.errors.append(str(error))
    # Separate transaction: the failed stage has already rolled back
    try:
        await _finish_batch(session_factory, result)
    except Exception as mark_err:
        log.error("batch_status_update_failed", error=str(mark_err))


async def run_pipeline(
    sources: list[SourceDescriptor],
    session_factory: async_sessionmaker[AsyncSession],
    config: PipelineConfig,
    stop_after_stage: PipelineStage | str | None = None,
    accumulate_raw: bool = True,
    dead_letter_dir: Path | None = None,
    batch_id: str | None = None,
) -> PipelineRunResult:
    """Run one batch over ``sources``.

    Args:
        sources: Product file paths or already-parsed ``ProductFile`` objects,
            one (source, method) partition each.
        session_factory: Async session factory for DB access.
        config: Pipeline configuration, passed explicitly to every stage.
        stop_after_stage: Last stage to run; ``None`` runs all three.
        accumulate_raw: When ``False`` every partition is cleared first.
        dead_letter_dir: Where unreadable input files are moved.
        batch_id: Explicit batch id; generated when omitted.

    Returns:
        A ``PipelineRunResult``; stage failures are reported in ``errors``
        with ``status="failed"`` rather than raised.

    Raises:
        ConfigurationError: If ``stop_after_stage`` is not a known stage.
        ConcurrentExecutionError: If another batch is still running.
    """
    stop = _coerce_stage(stop_after_stage)
    result = PipelineRunResult(batch_id=batch_id or generate_batch_id())
    input_files = [_describe(s) for s in sources]
    await _start_batch(session_factory, config, result.batch_id, stop, accumulate_raw, input_files)

    log = logger.bind(batch_id=result.batch_id)
    log.info("pipeline_started", files=len(sources), stop_after_stage=stop.value if stop else None)

    try:
        await _ingest_sources(sources, session_factory, config, result, accumulate_raw, dead_letter_dir)
        result.stages_completed.append(PipelineStage.JSON_INGESTION.value)
        await _update_batch(
            session_factory,
            result.batch_id,
            stages_completed=list(result.stages_completed),
            products_processed=result.products_processed,
            products_valid=result.products_valid,
            products_rejected=result.products_rejected,
        )
        if stop != PipelineStage.JSON_INGESTION:
            await _run_downstream_stages(session_factory, config, result, stop)
    except Exception as e:
        await _fail(session_factory, result, e)
        return result

    result.status = "completed"
    await _finish_batch(session_factory, result)
    log.info("pipeline_complete", stages_completed=result.stages_completed, final_products=result.final_product_count)
    return result


async def rebuild_from_raw_data(
    session_factory: async_sessionmaker[AsyncSession],
    config: PipelineConfig,
    batch_id: str | None = None,
    stop_after_stage: PipelineStage | str | None = None,
) -> PipelineRunResult:
    """Re-run FRN matching and deduplication over the accumulation store.

    No files are ingested; the batch records ``json_ingestion`` as skipped
    by leaving it out of ``stages_completed``.
    """
    stop = _coerce_stage(stop_after_stage)
    if stop == PipelineStage.JSON_INGESTION:
        raise ConfigurationError("rebuild does not run the json_ingestion stage")
    result = PipelineRunResult(batch_id=batch_id or generate_batch_id())
    await _start_batch(session_factory, config, result.batch_id, stop, True, [])

    log = logger.bind(batch_id=result.batch_id)
    log.info("rebuild_started", stop_after_stage=stop.value if stop else None)
    try:
        await _run_downstream_stages(session_factory, config, result, stop)
    except Exception as e:
        await _fail(session_factory, result, e)
        return result

    result.status = "completed"
    await _finish_batch(session_factory, result)
    log.info("rebuild_complete", stages_completed=result.stages_completed, final_products=result.final_product_count)
    return result
