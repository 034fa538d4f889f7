"""FRN matching stage: enrich every raw product in place.

Reads the accumulation store, resolves each product's institution name
against the lookup-cache index and writes ``frn``/``confidence_score``
back onto the raw row.  The enrichment, one matching-audit row per
product and the research-queue updates commit in one transaction.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field

import structlog
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from savings_pipeline.audit.recorder import AuditRecorder
from savings_pipeline.config.pipeline import FRNMatchingConfig
from savings_pipeline.frn.index import load_frn_index, rebuild_lookup_cache
from savings_pipeline.frn.research_queue import enqueue_for_research
from savings_pipeline.frn.resolver import Resolution, resolve_name
from savings_pipeline.models.frn_matching_audit import FRNMatchingAudit
from savings_pipeline.models.product_raw import ProductRaw

logger = structlog.get_logger()


@dataclass
class FRNMatchingStats:
    processed: int = 0
    enriched: int = 0
    routing: Counter = field(default_factory=Counter)
    query_methods: Counter = field(default_factory=Counter)
    queued_for_research: int = 0

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "enriched": self.enriched,
            "routing": dict(self.routing),
            "query_methods": dict(self.query_methods),
            "queued_for_research": self.queued_for_research,
        }


class FRNMatchingService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: FRNMatchingConfig,
    ) -> None:
        self.session_factory = session_factory
        self.config = config

    async def enrich_all(self, batch_id: str) -> FRNMatchingStats:
        """Resolve every product in the accumulation store for ``batch_id``.

        Names are resolved once per distinct bank name, but every product
        gets its own matching-audit row, written in product id order.
        """
        log = logger.bind(batch_id=batch_id)
        stats = FRNMatchingStats()

        async with self.session_factory() as session, session.begin():
            # A retried stage replaces its earlier audit rows
            await session.execute(delete(FRNMatchingAudit).where(FRNMatchingAudit.batch_id == batch_id))
            index = await load_frn_index(session)
            if len(index) == 0:
                rebuilt = await rebuild_lookup_cache(session, self.config.normalization)
                log.info("frn_lookup_cache_rebuilt", entries=rebuilt)
                index = await load_frn_index(session)

            result = await session.execute(select(ProductRaw).order_by(ProductRaw.product_id))
            products = result.scalars().all()
            recorder = AuditRecorder(session, batch_id)
            resolved: dict[str, Resolution] = {}

            for product in products:
                resolution = resolved.get(product.bank_name)
                if resolution is None:
                    resolution = resolve_name(product.bank_name, index, self.config)
                    resolved[product.bank_name] = resolution

                product.frn = resolution.frn
                product.confidence_score = resolution.confidence
                product.enrichment_batch_id = batch_id
                recorder.record_matching(product.product_id, resolution)

                stats.processed += 1
                stats.routing[resolution.routing] += 1
                stats.query_methods[resolution.query_method] += 1
                if resolution.assigned:
                    stats.enriched += 1
                elif self.config.enabled and self.config.enable_research_queue:
                    if await enqueue_for_research(session, resolution, batch_id, self.config):
                        stats.queued_for_research += 1

        log.info(
            "frn_matching_complete",
            processed=stats.processed,
            enriched=stats.enriched,
            distinct_names=len(resolved),
            routing=dict(stats.routing),
        )
        return stats
