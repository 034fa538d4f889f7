"""Accumulation store: raw products partitioned by (source, method).

``upsert_partition`` deletes and re-inserts exactly one partition and must
be called within an active ``session.begin()`` context, so the replace is
committed all-or-nothing.  Rows of every other partition are never read
for writing, updated or deleted.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from savings_pipeline.models.product_raw import ProductRaw

# Columns copied from a normalized product dict onto ProductRaw
_PRODUCT_COLUMNS = (
    "bank_name",
    "product_name",
    "platform",
    "raw_platform",
    "account_type",
    "aer_rate",
    "gross_rate",
    "term_months",
    "notice_period_days",
    "min_deposit",
    "max_deposit",
    "fscs_protected",
    "interest_payment_frequency",
    "apply_by_date",
    "special_features",
    "scrape_date",
    "raw_payload",
)


@dataclass(frozen=True)
class PartitionCount:
    source: str
    method: str
    count: int


def make_product_id(source: str, method: str, natural_id: str) -> str:
    return f"{source}/{method}/{natural_id}"


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc).replace(tzinfo=None)


class AccumulationStore:
    """Partition-scoped persistence of validated raw products."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def upsert_partition(
        self,
        source: str,
        method: str,
        products: list[dict],
        batch_id: str,
    ) -> int:
        """Replace all rows of ``(source, method)`` with ``products``.

        ``first_seen`` is carried over for natural ids already present in
        the partition.  FRN enrichment is carried over too when the bank
        name is unchanged, so re-ingesting identical input leaves
        enrichment values untouched until the matching stage runs again.

        Args:
            source: Partition source.
            method: Partition method.
            products: Normalized product dicts from the validator.
            batch_id: Batch that produced this partition content.

        Returns:
            Number of rows written.
        """
        existing = await self.session.execute(
            select(
                ProductRaw.natural_id,
                ProductRaw.first_seen,
                ProductRaw.bank_name,
                ProductRaw.frn,
                ProductRaw.confidence_score,
                ProductRaw.enrichment_batch_id,
            ).where(ProductRaw.source == source, ProductRaw.method == method)
        )
        carried = {natural_id: tuple(rest) for natural_id, *rest in existing.all()}

        await self.session.execute(
            delete(ProductRaw).where(ProductRaw.source == source, ProductRaw.method == method)
        )

        now = _utcnow()
        rows = []
        for product in products:
            natural_id = product["natural_id"]
            seen, old_bank, frn, confidence, enrichment_batch_id = carried.get(
                natural_id, (now, None, None, 0.0, None)
            )
            if old_bank != product.get("bank_name"):
                frn, confidence, enrichment_batch_id = None, 0.0, None
            row = ProductRaw(
                product_id=make_product_id(source, method, natural_id),
                source=source,
                method=method,
                natural_id=natural_id,
                batch_id=batch_id,
                first_seen=seen,
                last_updated=product.get("last_updated") or now,
                frn=frn,
                confidence_score=confidence,
                enrichment_batch_id=enrichment_batch_id,
                **{name: product.get(name) for name in _PRODUCT_COLUMNS},
            )
            rows.append(row)
        self.session.add_all(rows)
        await self.session.flush()
        return len(rows)

    async def clear_all(self) -> int:
        """Delete every partition; used when a batch does not accumulate."""
        result = await self.session.execute(delete(ProductRaw))
        return result.rowcount or 0

    async def count_by_partition(self, source: str, method: str) -> int:
        result = await self.session.execute(
            select(func.count())
            .select_from(ProductRaw)
            .where(ProductRaw.source == source, ProductRaw.method == method)
        )
        return result.scalar_one()

    async def count_by_method(self) -> dict[str, int]:
        result = await self.session.execute(
            select(ProductRaw.method, func.count()).group_by(ProductRaw.method).order_by(ProductRaw.method)
        )
        return {method: count for method, count in result.all()}

    async def list_combinations(self) -> list[PartitionCount]:
        """Distinct (source, method) pairs with their row counts."""
        result = await self.session.execute(
            select(ProductRaw.source, ProductRaw.method, func.count())
            .group_by(ProductRaw.source, ProductRaw.method)
            .order_by(ProductRaw.source, ProductRaw.method)
        )
        return [PartitionCount(source, method, count) for source, method, count in result.all()]

    async def total_count(self) -> int:
        result = await self.session.execute(select(func.count()).select_from(ProductRaw))
        return result.scalar_one()
