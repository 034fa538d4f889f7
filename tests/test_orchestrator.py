"""Integration tests for the pipeline orchestrator."""

import re
from datetime import datetime

import pytest
from sqlalchemy import func, select

from savings_pipeline.config.pipeline import PipelineConfig
from savings_pipeline.errors import ConcurrentExecutionError, ConfigurationError
from savings_pipeline.ingestion.json_loader import ProductFile
from savings_pipeline.models.audit_log import AuditLog
from savings_pipeline.models.current_product import CurrentProduct
from savings_pipeline.models.deduplication_audit import DeduplicationAudit
from savings_pipeline.models.deduplication_group import DeduplicationGroup
from savings_pipeline.models.frn_matching_audit import FRNMatchingAudit
from savings_pipeline.models.ingestion_audit import IngestionAudit
from savings_pipeline.models.pipeline_batch import PipelineBatch
from savings_pipeline.models.product_raw import ProductRaw
from savings_pipeline.worker.orchestrator import (
    PipelineStage,
    generate_batch_id,
    rebuild_from_raw_data,
    reset_batch,
    run_pipeline,
)


def _make_product(product_id: str, bank_name: str, aer_rate: float = 4.5, **overrides) -> dict:
    """Create a scraped product record."""
    product = {
        "productId": product_id,
        "bankName": bank_name,
        "productName": "Easy Saver",
        "accountType": "easy_access",
        "aerRate": aer_rate,
        "platform": "direct",
    }
    product.update(overrides)
    return {k: v for k, v in product.items() if v is not None}


def _moneyfacts_products() -> list[dict]:
    return [
        _make_product("mf-1", "Santander UK plc"),
        _make_product("mf-2", "Barclays", aer_rate=4.1),
        _make_product("mf-3", "Totally Unknown Bank Ltd", aer_rate=3.9),
        _make_product("mf-4", "Nationwide", aer_rate=None),
    ]


def _ajbell_products() -> list[dict]:
    return [_make_product("aj-1", "Santander")]


async def _count(session_factory, model, *criteria) -> int:
    async with session_factory() as session:
        statement = select(func.count()).select_from(model)
        if criteria:
            statement = statement.where(*criteria)
        return (await session.execute(statement)).scalar_one()


async def _batch(session_factory, batch_id: str) -> PipelineBatch:
    async with session_factory() as session:
        result = await session.execute(select(PipelineBatch).where(PipelineBatch.batch_id == batch_id))
        return result.scalar_one()


async def test_full_run(test_session_factory, seeded_reference, write_product_file):
    """Ingestion, FRN matching and deduplication over two partitions."""
    files = [
        write_product_file("moneyfacts", "easy_access", _moneyfacts_products()),
        write_product_file("ajbell", "easy_access", _ajbell_products()),
    ]
    result = await run_pipeline(files, test_session_factory, PipelineConfig())

    assert result.status == "completed", result.errors
    assert result.stages_completed == ["json_ingestion", "frn_matching", "deduplication"]
    assert (result.products_processed, result.products_valid, result.products_rejected) == (5, 4, 1)
    assert result.products_enriched == 3
    assert result.final_product_count == 3

    batch = await _batch(test_session_factory, result.batch_id)
    assert batch.status == "completed"
    assert batch.stages_completed == result.stages_completed
    assert batch.final_product_count == 3
    assert batch.finished_at is not None

    batch_filter = IngestionAudit.batch_id == result.batch_id
    assert await _count(test_session_factory, IngestionAudit, batch_filter) == 5
    assert await _count(test_session_factory, FRNMatchingAudit, FRNMatchingAudit.batch_id == result.batch_id) == 4
    assert await _count(test_session_factory, DeduplicationAudit) == 1

    async with test_session_factory() as session:
        groups = (await session.execute(select(DeduplicationGroup))).scalars().all()
        current = (await session.execute(select(CurrentProduct))).scalars().all()
    assert sorted(g.products_in_group for g in groups) == [1, 1, 2]
    santander = next(g for g in groups if g.products_in_group == 2)
    assert santander.selection_reason == "quality_ranked"
    assert santander.sources_in_group == ["ajbell", "moneyfacts"]
    assert sorted(c.frn or "" for c in current) == ["", "106054", "122702"]
    unknown = next(c for c in current if c.bank_name == "Totally Unknown Bank Ltd")
    assert unknown.frn is None
    assert unknown.confidence_score == 0.0


async def test_groups_cover_every_enriched_product(test_session_factory, seeded_reference, write_product_file):
    files = [
        write_product_file("moneyfacts", "easy_access", _moneyfacts_products()),
        write_product_file("ajbell", "easy_access", _ajbell_products()),
    ]
    result = await run_pipeline(files, test_session_factory, PipelineConfig())

    async with test_session_factory() as session:
        groups = (await session.execute(select(DeduplicationGroup))).scalars().all()
        raw_ids = set((await session.execute(select(ProductRaw.product_id))).scalars().all())
    covered = []
    for group in groups:
        covered.append(group.selected_product_id)
        covered.extend(r["productId"] for r in group.rejected_products)
        assert group.products_in_group == 1 + len(group.rejected_products)
    assert sorted(covered) == sorted(raw_ids)
    assert result.final_product_count == len(groups)


async def test_stop_after_ingestion(test_session_factory, seeded_reference, write_product_file):
    path = write_product_file("moneyfacts", "easy_access", _moneyfacts_products())
    result = await run_pipeline([path], test_session_factory, PipelineConfig(), stop_after_stage="json_ingestion")

    assert result.status == "completed"
    assert result.stages_completed == ["json_ingestion"]
    assert result.final_product_count is None
    assert await _count(test_session_factory, ProductRaw) == 3
    assert await _count(test_session_factory, ProductRaw, ProductRaw.frn.is_not(None)) == 0
    assert await _count(test_session_factory, FRNMatchingAudit) == 0
    batch = await _batch(test_session_factory, result.batch_id)
    assert batch.stop_after_stage == "json_ingestion"


async def test_stop_after_frn_matching(test_session_factory, seeded_reference, write_product_file):
    path = write_product_file("moneyfacts", "easy_access", _moneyfacts_products())
    result = await run_pipeline(
        [path], test_session_factory, PipelineConfig(), stop_after_stage=PipelineStage.FRN_MATCHING
    )

    assert result.stages_completed == ["json_ingestion", "frn_matching"]
    assert await _count(test_session_factory, FRNMatchingAudit) == 3
    assert await _count(test_session_factory, DeduplicationAudit) == 0
    assert await _count(test_session_factory, CurrentProduct) == 0


async def test_rerun_is_idempotent(test_session_factory, seeded_reference, write_product_file):
    """Ingesting identical input twice yields identical current products."""
    path = write_product_file("moneyfacts", "easy_access", _moneyfacts_products())
    await run_pipeline([path], test_session_factory, PipelineConfig())
    async with test_session_factory() as session:
        first = sorted((await session.execute(select(CurrentProduct.product_id, CurrentProduct.frn))).all())

    await run_pipeline([path], test_session_factory, PipelineConfig())
    async with test_session_factory() as session:
        second = sorted((await session.execute(select(CurrentProduct.product_id, CurrentProduct.frn))).all())

    assert first == second
    assert await _count(test_session_factory, ProductRaw) == 3


async def test_partitions_accumulate_across_runs(test_session_factory, seeded_reference, write_product_file):
    await run_pipeline(
        [write_product_file("moneyfacts", "easy_access", _moneyfacts_products())], test_session_factory, PipelineConfig()
    )
    result = await run_pipeline(
        [write_product_file("hl", "notice", [_make_product("hl-1", "Nationwide BS", accountType="notice")])],
        test_session_factory,
        PipelineConfig(),
    )

    assert result.final_product_count == 4
    assert await _count(test_session_factory, ProductRaw) == 4
    # Deduplication covers the whole store, matching only re-audits it
    assert await _count(test_session_factory, FRNMatchingAudit, FRNMatchingAudit.batch_id == result.batch_id) == 4


async def test_no_accumulate_clears_store(test_session_factory, seeded_reference, write_product_file):
    await run_pipeline(
        [write_product_file("moneyfacts", "easy_access", _moneyfacts_products())], test_session_factory, PipelineConfig()
    )
    result = await run_pipeline(
        [write_product_file("ajbell", "easy_access", _ajbell_products())],
        test_session_factory,
        PipelineConfig(),
        accumulate_raw=False,
    )

    assert result.final_product_count == 1
    async with test_session_factory() as session:
        ids = (await session.execute(select(ProductRaw.product_id))).scalars().all()
    assert ids == ["ajbell/easy_access/aj-1"]


async def test_product_file_objects_accepted(test_session_factory, seeded_reference):
    product_file = ProductFile.model_validate(
        {"metadata": {"source": "flagstone", "method": "fixed_term"}, "products": [_make_product("f-1", "Barclays")]}
    )
    result = await run_pipeline([product_file], test_session_factory, PipelineConfig())

    assert result.status == "completed"
    batch = await _batch(test_session_factory, result.batch_id)
    assert batch.input_files == ["flagstone/fixed_term"]


async def test_all_inputs_unreadable_fails_batch(test_session_factory, tmp_path, tmp_dead_letter_dir):
    """A stage failure is reported on the result and the batch row."""
    path = tmp_path / "broken.json"
    path.write_text("[1, 2", encoding="utf-8")
    result = await run_pipeline([path], test_session_factory, PipelineConfig(), dead_letter_dir=tmp_dead_letter_dir)

    assert result.status == "failed"
    assert result.stages_completed == []
    assert "no input file could be ingested" in result.errors[0]
    batch = await _batch(test_session_factory, result.batch_id)
    assert batch.status == "failed"
    assert "json_ingestion" in batch.error_message
    assert (tmp_dead_letter_dir / "broken.json").exists()


async def test_one_bad_file_does_not_stop_batch(test_session_factory, seeded_reference, tmp_path, write_product_file):
    broken = tmp_path / "broken.json"
    broken.write_text("{", encoding="utf-8")
    good = write_product_file("moneyfacts", "easy_access", _moneyfacts_products())

    result = await run_pipeline([broken, good], test_session_factory, PipelineConfig())

    assert result.status == "completed"
    assert len(result.warnings) >= 1
    assert [f["status"] for f in result.files] == ["failed", "completed"]


async def test_undecodable_file_is_dead_lettered_and_batch_continues(
    test_session_factory, seeded_reference, tmp_path, tmp_dead_letter_dir, write_product_file
):
    bad = tmp_path / "bad.json"
    bad.write_bytes(b'{"metadata": {"source": "hl", "method": "notice"}, "products": [' + b"\xff" + b"]}")
    good = write_product_file("moneyfacts", "easy_access", _moneyfacts_products())

    result = await run_pipeline(
        [bad, good], test_session_factory, PipelineConfig(), dead_letter_dir=tmp_dead_letter_dir
    )

    assert result.status == "completed"
    assert [f["status"] for f in result.files] == ["failed", "completed"]
    assert result.stages_completed == ["json_ingestion", "frn_matching", "deduplication"]
    assert (tmp_dead_letter_dir / "bad.json").exists()


async def test_concurrent_batch_rejected(test_session_factory, write_product_file):
    async with test_session_factory() as session, session.begin():
        session.add(PipelineBatch(batch_id="batch-other", status="running", stages_completed=[]))

    path = write_product_file("moneyfacts", "easy_access", _moneyfacts_products())
    with pytest.raises(ConcurrentExecutionError):
        await run_pipeline([path], test_session_factory, PipelineConfig())


async def test_stale_running_batch_is_expired(test_session_factory, seeded_reference, write_product_file):
    """A batch left running by a dead process does not block new batches forever."""
    async with test_session_factory() as session, session.begin():
        session.add(
            PipelineBatch(batch_id="batch-dead", status="running", stages_completed=[], started_at=datetime(2000, 1, 1))
        )

    path = write_product_file("moneyfacts", "easy_access", _moneyfacts_products())
    result = await run_pipeline([path], test_session_factory, PipelineConfig())
    assert result.status == "completed"

    async with test_session_factory() as session:
        dead = (await session.execute(select(PipelineBatch).where(PipelineBatch.batch_id == "batch-dead"))).scalar_one()
    assert dead.status == "failed"
    assert dead.error_message.startswith("abandoned: still running after 240 minutes")
    assert dead.finished_at is not None


async def test_stale_expiry_can_be_disabled(test_session_factory, write_product_file):
    async with test_session_factory() as session, session.begin():
        session.add(
            PipelineBatch(batch_id="batch-dead", status="running", stages_completed=[], started_at=datetime(2000, 1, 1))
        )

    config = PipelineConfig.model_validate({"orchestration": {"stale_batch_minutes": 0}})
    path = write_product_file("moneyfacts", "easy_access", _moneyfacts_products())
    with pytest.raises(ConcurrentExecutionError):
        await run_pipeline([path], test_session_factory, config)


async def test_reset_batch_unblocks_pipeline(test_session_factory, seeded_reference, write_product_file):
    async with test_session_factory() as session, session.begin():
        session.add(PipelineBatch(batch_id="batch-other", status="running", stages_completed=[]))

    assert await reset_batch(test_session_factory, "batch-other", operator="ops")
    assert not await reset_batch(test_session_factory, "batch-other")

    async with test_session_factory() as session:
        batch = (
            await session.execute(select(PipelineBatch).where(PipelineBatch.batch_id == "batch-other"))
        ).scalar_one()
        log = (await session.execute(select(AuditLog).where(AuditLog.action_type == "batch_reset"))).scalar_one()
    assert batch.status == "failed"
    assert batch.error_message == "reset by ops"
    assert (log.subject, log.operator) == ("batch-other", "ops")

    path = write_product_file("moneyfacts", "easy_access", _moneyfacts_products())
    result = await run_pipeline([path], test_session_factory, PipelineConfig())
    assert result.status == "completed"


async def test_concurrency_check_can_be_disabled(test_session_factory, seeded_reference, write_product_file):
    async with test_session_factory() as session, session.begin():
        session.add(PipelineBatch(batch_id="batch-other", status="running", stages_completed=[]))

    config = PipelineConfig.model_validate({"orchestration": {"concurrent_execution_check": False}})
    path = write_product_file("moneyfacts", "easy_access", _moneyfacts_products())
    result = await run_pipeline([path], test_session_factory, config)
    assert result.status == "completed"


async def test_unknown_stop_stage(test_session_factory, write_product_file):
    path = write_product_file("moneyfacts", "easy_access", _moneyfacts_products())
    with pytest.raises(ConfigurationError):
        await run_pipeline([path], test_session_factory, PipelineConfig(), stop_after_stage="publishing")
    assert await _count(test_session_factory, PipelineBatch) == 0


async def test_retry_with_same_batch_id(test_session_factory, seeded_reference, write_product_file):
    """Re-running a batch id replaces its stage audit rows."""
    path = write_product_file("moneyfacts", "easy_access", _moneyfacts_products())
    await run_pipeline([path], test_session_factory, PipelineConfig(), batch_id="batch-retry")
    result = await run_pipeline([path], test_session_factory, PipelineConfig(), batch_id="batch-retry")

    assert result.status == "completed"
    assert await _count(test_session_factory, PipelineBatch) == 1
    assert await _count(test_session_factory, FRNMatchingAudit) == 3
    assert await _count(test_session_factory, DeduplicationAudit) == 1
    assert await _count(test_session_factory, DeduplicationGroup) == 3


async def test_rebuild_from_raw_data(test_session_factory, seeded_reference, write_product_file):
    path = write_product_file("moneyfacts", "easy_access", _moneyfacts_products())
    await run_pipeline([path], test_session_factory, PipelineConfig(), stop_after_stage="json_ingestion")

    result = await rebuild_from_raw_data(test_session_factory, PipelineConfig())

    assert result.status == "completed"
    assert result.stages_completed == ["frn_matching", "deduplication"]
    assert result.products_processed == 3
    assert result.final_product_count == 3
    assert await _count(test_session_factory, FRNMatchingAudit, FRNMatchingAudit.batch_id == result.batch_id) == 3
    assert await _count(test_session_factory, IngestionAudit, IngestionAudit.batch_id == result.batch_id) == 0


async def test_rebuild_rejects_ingestion_stage(test_session_factory):
    with pytest.raises(ConfigurationError):
        await rebuild_from_raw_data(test_session_factory, PipelineConfig(), stop_after_stage="json_ingestion")


def test_generate_batch_id():
    batch_id = generate_batch_id()
    assert re.fullmatch(r"batch-\d{8}T\d{6}-[0-9a-f]{8}", batch_id)
    assert generate_batch_id() != batch_id
