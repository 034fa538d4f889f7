"""Tests for enriched product loading and current product persistence."""

import datetime as dt

from sqlalchemy import select

from savings_pipeline.config.pipeline import DeduplicationConfig, NormalizationConfig
from savings_pipeline.dedup.engine import run_deduplication
from savings_pipeline.ingestion.accumulation import AccumulationStore
from savings_pipeline.models.current_product import CurrentProduct
from savings_pipeline.models.deduplication_group import DeduplicationGroup
from savings_pipeline.worker.persistence import (
    clear_batch_rows,
    load_enriched_products,
    replace_current_products,
)

NOW = dt.datetime(2026, 10, 18, 12, 0, 0)


def _make_product(natural_id: str, bank_name: str = "Santander UK plc", **overrides) -> dict:
    """Helper: a validated product dict as the accumulation store expects it."""
    product = {
        "natural_id": natural_id,
        "bank_name": bank_name,
        "platform": "direct",
        "account_type": "easy_access",
        "aer_rate": 4.5,
        "last_updated": NOW,
    }
    product.update(overrides)
    return product


async def _store(session_factory, source: str, products: list[dict]) -> None:
    async with session_factory() as session, session.begin():
        await AccumulationStore(session).upsert_partition(source, "easy_access", products, "batch-1")


async def test_load_enriched_products_ordered(test_session_factory):
    await _store(test_session_factory, "moneyfacts", [_make_product("b"), _make_product("a")])
    await _store(test_session_factory, "ajbell", [_make_product("z", max_deposit=85000.0)])

    async with test_session_factory() as session:
        products = await load_enriched_products(session)

    assert [p["product_id"] for p in products] == [
        "ajbell/easy_access/z",
        "moneyfacts/easy_access/a",
        "moneyfacts/easy_access/b",
    ]
    first = products[0]
    assert first["source"] == "ajbell"
    assert first["method"] == "easy_access"
    assert first["max_deposit"] == 85000.0
    assert first["frn"] is None
    assert first["confidence_score"] == 0.0
    assert first["last_updated"] == NOW


async def test_replace_current_products(test_session_factory):
    """Survivors replace the previous contents of the table."""
    await _store(test_session_factory, "moneyfacts", [_make_product("a"), _make_product("b", bank_name="Barclays")])
    async with test_session_factory() as session:
        products = await load_enriched_products(session)
    result = run_deduplication(products, DeduplicationConfig(), NormalizationConfig(), now=NOW)

    async with test_session_factory() as session, session.begin():
        session.add(
            CurrentProduct(
                product_id="stale",
                batch_id="batch-0",
                business_key="K",
                bank_name="Old Bank",
                platform="direct",
                source="x",
                method="y",
                account_type="easy_access",
                aer_rate=1.0,
                selection_reason="single_product",
            )
        )
    async with test_session_factory() as session, session.begin():
        written = await replace_current_products(session, result, "batch-1")

    assert written == 2
    async with test_session_factory() as session:
        rows = (await session.execute(select(CurrentProduct).order_by(CurrentProduct.product_id))).scalars().all()
    assert [r.product_id for r in rows] == ["moneyfacts/easy_access/a", "moneyfacts/easy_access/b"]
    assert all(r.batch_id == "batch-1" for r in rows)
    assert all(r.selection_reason == "single_product" for r in rows)
    assert rows[0].business_key == "SANTANDER|easy_access|term_none|notice_none|rate_4.50"
    assert rows[0].quality_score is not None


async def test_clear_batch_rows_only_touches_batch(test_session_factory):
    def group(batch_id: str) -> DeduplicationGroup:
        return DeduplicationGroup(
            batch_id=batch_id,
            business_key="K",
            products_in_group=1,
            platforms_in_group=["direct"],
            sources_in_group=["moneyfacts"],
            selected_product_id="p",
            selected_product_platform="direct",
            selected_product_source="moneyfacts",
            selection_reason="single_product",
            quality_scores={"p": 0.5},
            rejected_products=[],
        )

    async with test_session_factory() as session, session.begin():
        session.add_all([group("batch-1"), group("batch-1"), group("batch-2")])
    async with test_session_factory() as session, session.begin():
        await clear_batch_rows(session, "batch-1", DeduplicationGroup)

    async with test_session_factory() as session:
        remaining = (await session.execute(select(DeduplicationGroup.batch_id))).scalars().all()
    assert remaining == ["batch-2"]
