"""Tests for the partitioned accumulation store."""

from sqlalchemy import select, update

from savings_pipeline.ingestion.accumulation import AccumulationStore, PartitionCount, make_product_id
from savings_pipeline.models.product_raw import ProductRaw


def _make_product(natural_id: str, bank_name: str = "Santander UK plc", **overrides) -> dict:
    product = {
        "natural_id": natural_id,
        "bank_name": bank_name,
        "platform": "direct",
        "account_type": "easy_access",
        "aer_rate": 4.5,
    }
    product.update(overrides)
    return product


async def _upsert(session_factory, source: str, method: str, products: list[dict], batch_id: str = "b1") -> int:
    async with session_factory() as session, session.begin():
        return await AccumulationStore(session).upsert_partition(source, method, products, batch_id)


async def _rows(session_factory) -> dict[str, ProductRaw]:
    async with session_factory() as session:
        result = await session.execute(select(ProductRaw))
        return {row.product_id: row for row in result.scalars()}


def test_make_product_id():
    assert make_product_id("moneyfacts", "easy_access", "mf-1") == "moneyfacts/easy_access/mf-1"


async def test_upsert_writes_partition(test_session_factory):
    written = await _upsert(test_session_factory, "moneyfacts", "easy_access", [_make_product("a"), _make_product("b")])

    assert written == 2
    rows = await _rows(test_session_factory)
    assert set(rows) == {"moneyfacts/easy_access/a", "moneyfacts/easy_access/b"}
    row = rows["moneyfacts/easy_access/a"]
    assert row.source == "moneyfacts"
    assert row.method == "easy_access"
    assert row.batch_id == "b1"
    assert row.frn is None
    assert row.confidence_score == 0.0


async def test_replace_leaves_other_partitions_untouched(test_session_factory):
    """Replacing one partition never touches its siblings."""
    await _upsert(test_session_factory, "moneyfacts", "easy_access", [_make_product("a"), _make_product("b")])
    await _upsert(test_session_factory, "moneyfacts", "notice", [_make_product("n1")])
    await _upsert(test_session_factory, "ajbell", "easy_access", [_make_product("x1")])
    before = await _rows(test_session_factory)

    await _upsert(test_session_factory, "moneyfacts", "easy_access", [_make_product("c")], batch_id="b2")

    after = await _rows(test_session_factory)
    assert set(after) == {"moneyfacts/easy_access/c", "moneyfacts/notice/n1", "ajbell/easy_access/x1"}
    for product_id in ("moneyfacts/notice/n1", "ajbell/easy_access/x1"):
        assert after[product_id].id == before[product_id].id
        assert after[product_id].batch_id == "b1"


async def test_empty_input_clears_partition(test_session_factory):
    await _upsert(test_session_factory, "moneyfacts", "easy_access", [_make_product("a")])
    assert await _upsert(test_session_factory, "moneyfacts", "easy_access", []) == 0
    assert await _rows(test_session_factory) == {}


async def test_first_seen_carried_over(test_session_factory):
    await _upsert(test_session_factory, "moneyfacts", "easy_access", [_make_product("a")])
    first = (await _rows(test_session_factory))["moneyfacts/easy_access/a"]

    await _upsert(test_session_factory, "moneyfacts", "easy_access", [_make_product("a", aer_rate=4.7)], batch_id="b2")
    second = (await _rows(test_session_factory))["moneyfacts/easy_access/a"]

    assert second.first_seen == first.first_seen
    assert second.aer_rate == 4.7
    assert second.batch_id == "b2"


async def test_enrichment_carried_only_for_same_bank(test_session_factory):
    """FRN enrichment survives re-ingestion unless the bank name changed."""
    await _upsert(test_session_factory, "moneyfacts", "easy_access", [_make_product("a"), _make_product("b")])
    async with test_session_factory() as session, session.begin():
        await session.execute(
            update(ProductRaw).values(frn="106054", confidence_score=1.0, enrichment_batch_id="b1")
        )

    await _upsert(
        test_session_factory,
        "moneyfacts",
        "easy_access",
        [_make_product("a"), _make_product("b", bank_name="Barclays")],
        batch_id="b2",
    )
    rows = await _rows(test_session_factory)

    kept = rows["moneyfacts/easy_access/a"]
    assert (kept.frn, kept.confidence_score, kept.enrichment_batch_id) == ("106054", 1.0, "b1")
    reset = rows["moneyfacts/easy_access/b"]
    assert (reset.frn, reset.confidence_score, reset.enrichment_batch_id) == (None, 0.0, None)


async def test_counts_and_combinations(test_session_factory):
    await _upsert(test_session_factory, "moneyfacts", "easy_access", [_make_product("a"), _make_product("b")])
    await _upsert(test_session_factory, "moneyfacts", "notice", [_make_product("n1")])
    await _upsert(test_session_factory, "ajbell", "easy_access", [_make_product("x1")])

    async with test_session_factory() as session:
        store = AccumulationStore(session)
        assert await store.count_by_partition("moneyfacts", "easy_access") == 2
        assert await store.count_by_partition("hl", "easy_access") == 0
        assert await store.count_by_method() == {"easy_access": 3, "notice": 1}
        assert await store.list_combinations() == [
            PartitionCount("ajbell", "easy_access", 1),
            PartitionCount("moneyfacts", "easy_access", 2),
            PartitionCount("moneyfacts", "notice", 1),
        ]
        assert await store.total_count() == 4


async def test_clear_all(test_session_factory):
    await _upsert(test_session_factory, "moneyfacts", "easy_access", [_make_product("a")])
    await _upsert(test_session_factory, "ajbell", "notice", [_make_product("b")])

    async with test_session_factory() as session, session.begin():
        cleared = await AccumulationStore(session).clear_all()

    assert cleared == 2
    assert await _rows(test_session_factory) == {}
