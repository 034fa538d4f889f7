"""Enriched product loading and current-product persistence.

Provides the database side of the deduplication stage:
- ``load_enriched_products``: all raw products as dicts for the engine.
- ``replace_current_products``: clear-and-replace the winners table.
- ``clear_batch_rows``: drop a batch's rows from stage tables before a retry.
"""

from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from savings_pipeline.dedup.engine import DeduplicationResult
from savings_pipeline.models.current_product import CurrentProduct
from savings_pipeline.models.product_raw import ProductRaw


async def load_enriched_products(session: AsyncSession) -> list[dict]:
    """Load every accumulated product, ordered by product id."""
    result = await session.execute(select(ProductRaw).order_by(ProductRaw.product_id))
    return [
        {
            "product_id": row.product_id,
            "source": row.source,
            "method": row.method,
            "bank_name": row.bank_name,
            "product_name": row.product_name,
            "platform": row.platform,
            "account_type": row.account_type,
            "aer_rate": row.aer_rate,
            "gross_rate": row.gross_rate,
            "term_months": row.term_months,
            "notice_period_days": row.notice_period_days,
            "min_deposit": row.min_deposit,
            "max_deposit": row.max_deposit,
            "fscs_protected": row.fscs_protected,
            "interest_payment_frequency": row.interest_payment_frequency,
            "frn": row.frn,
            "confidence_score": row.confidence_score,
            "last_updated": row.last_updated,
        }
        for row in result.scalars()
    ]


async def replace_current_products(
    session: AsyncSession,
    result: DeduplicationResult,
    batch_id: str,
) -> int:
    """Replace the current-products table with this run's survivors.

    Must be called within an active ``session.begin()`` context.

    Returns:
        Number of current products written.
    """
    await session.execute(delete(CurrentProduct))

    rows = []
    for selection in result.selections:
        survivor = selection.survivor
        product = survivor.product
        rows.append(
            CurrentProduct(
                product_id=survivor.product_id,
                batch_id=batch_id,
                business_key=selection.business_key,
                bank_name=product["bank_name"],
                product_name=product.get("product_name"),
                platform=product["platform"],
                source=product["source"],
                method=product["method"],
                account_type=product["account_type"],
                aer_rate=product["aer_rate"],
                gross_rate=product.get("gross_rate"),
                term_months=product.get("term_months"),
                notice_period_days=product.get("notice_period_days"),
                min_deposit=product.get("min_deposit"),
                max_deposit=product.get("max_deposit"),
                fscs_protected=product.get("fscs_protected", True),
                frn=product.get("frn"),
                confidence_score=product.get("confidence_score") or 0.0,
                quality_score=survivor.quality,
                selection_reason=selection.reason.value,
                last_updated=product.get("last_updated"),
            )
        )
    session.add_all(rows)
    return len(rows)


async def clear_batch_rows(session: AsyncSession, batch_id: str, *models) -> None:
    """Delete rows keyed by ``batch_id`` from each of ``models``."""
    for model in models:
        await session.execute(delete(model).where(model.batch_id == batch_id))
