"""Research queue for institution names without an assigned FRN."""

from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from savings_pipeline.config.pipeline import FRNMatchingConfig
from savings_pipeline.frn.resolver import Resolution
from savings_pipeline.models.frn_research_queue import FRNResearchQueueItem

logger = logging.getLogger(__name__)


async def enqueue_for_research(
    session: AsyncSession,
    resolution: Resolution,
    batch_id: str,
    config: FRNMatchingConfig,
) -> bool:
    """Add or bump the queue entry for an unresolved name.

    Generic names are skipped, and new names are not added once the queue
    holds ``research_queue_max_size`` entries.

    Returns:
        ``True`` if a queue row was inserted or updated.
    """
    name = resolution.normalized_name
    if not name or name in {generic.upper() for generic in config.generic_names}:
        return False

    best = resolution.best_candidate
    result = await session.execute(
        select(FRNResearchQueueItem).where(FRNResearchQueueItem.normalized_name == name)
    )
    item = result.scalar_one_or_none()
    if item is not None:
        item.occurrence_count += 1
        item.last_batch_id = batch_id
        if best is not None and best.confidence > (item.best_candidate_confidence or 0.0):
            item.best_candidate_frn = best.frn
            item.best_candidate_confidence = best.confidence
        return True

    size = (await session.execute(select(func.count()).select_from(FRNResearchQueueItem))).scalar_one()
    if size >= config.research_queue_max_size:
        logger.warning("Research queue full (%d entries), not queueing %r", size, name)
        return False

    session.add(
        FRNResearchQueueItem(
            normalized_name=name,
            original_name=resolution.original_name,
            occurrence_count=1,
            best_candidate_frn=best.frn if best else None,
            best_candidate_confidence=best.confidence if best else None,
            first_batch_id=batch_id,
            last_batch_id=batch_id,
            status="pending",
        )
    )
    return True


async def list_research_queue(
    session: AsyncSession,
    status: str = "pending",
    limit: int = 100,
) -> list[FRNResearchQueueItem]:
    """Most frequent queued names first."""
    result = await session.execute(
        select(FRNResearchQueueItem)
        .where(FRNResearchQueueItem.status == status)
        .order_by(FRNResearchQueueItem.occurrence_count.desc(), FRNResearchQueueItem.normalized_name)
        .limit(limit)
    )
    return list(result.scalars().all())
