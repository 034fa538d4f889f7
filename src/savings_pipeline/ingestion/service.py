"""Ingestion stage: validate a product file and replace its partition."""

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from savings_pipeline.audit.recorder import AuditRecorder
from savings_pipeline.config.pipeline import IngestionConfig
from savings_pipeline.errors import SourceFileError
from savings_pipeline.ingestion.accumulation import AccumulationStore, make_product_id
from savings_pipeline.ingestion.json_loader import ProductFile, load_product_file
from savings_pipeline.ingestion.validator import ValidationOutcome, source_reliability, validate_product

logger = logging.getLogger(__name__)


@dataclass
class PartitionIngestResult:
    status: str
    source: str = ""
    method: str = ""
    total: int = 0
    valid: int = 0
    invalid: int = 0
    rows_written: int = 0
    corruption_exceeded: bool = False
    file_name: str | None = None
    file_hash: str = ""
    reason: str = ""


def validate_partition(product_file: ProductFile, config: IngestionConfig) -> list[ValidationOutcome]:
    """Validate every record of one partition input, in input order.

    A natural id that already appeared earlier in the same input fails
    the ``unique_natural_id`` rule; the first occurrence is kept.
    """
    outcomes = []
    seen: set[str] = set()
    for index, record in enumerate(product_file.products):
        outcome = validate_product(record, product_file.source, config, record_index=index)
        if isinstance(record, dict):
            duplicate = outcome.natural_id in seen
            outcome.add_check(
                "natural_id",
                "unique_natural_id",
                not duplicate,
                f"duplicate natural id {outcome.natural_id!r} in partition input" if duplicate else None,
            )
            seen.add(outcome.natural_id)
        outcomes.append(outcome)
    return outcomes


class IngestionService:
    """Validate product files and write them to the accumulation store."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: IngestionConfig,
        dead_letter_dir: Path | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.config = config
        self.dead_letter_dir = dead_letter_dir

    async def ingest(self, product_file: ProductFile, batch_id: str) -> PartitionIngestResult:
        """Ingest one partition in a single transaction.

        Audit rows, the corruption audit and the partition replace commit
        together; a store failure rolls all of them back and propagates.
        """
        source, method = product_file.source, product_file.method
        outcomes = validate_partition(product_file, self.config)
        reliability = source_reliability(source, self.config)
        valid_products = [o.product for o in outcomes if o.valid]

        async with self.session_factory() as session, session.begin():
            recorder = AuditRecorder(session, batch_id)
            for index, outcome in enumerate(outcomes):
                recorder.record_ingestion(
                    source,
                    method,
                    make_product_id(source, method, outcome.natural_id),
                    index,
                    outcome,
                    reliability,
                )
            exceeded = recorder.record_corruption(
                source,
                method,
                affected_count=len(outcomes) - len(valid_products),
                total_count=len(outcomes),
                threshold=self.config.data_corruption_threshold,
            )
            written = await AccumulationStore(session).upsert_partition(source, method, valid_products, batch_id)

        if exceeded:
            logger.warning(
                "Partition %s/%s exceeded corruption threshold: %d of %d records invalid",
                source,
                method,
                len(outcomes) - len(valid_products),
                len(outcomes),
            )
        logger.info("Ingested %s/%s: %d valid of %d", source, method, len(valid_products), len(outcomes))

        return PartitionIngestResult(
            status="completed",
            source=source,
            method=method,
            total=len(outcomes),
            valid=len(valid_products),
            invalid=len(outcomes) - len(valid_products),
            rows_written=written,
            corruption_exceeded=exceeded,
            file_name=product_file.file_name,
            file_hash=product_file.file_hash or "",
        )

    async def ingest_file(
        self,
        file_path: Path,
        batch_id: str,
        source: str | None = None,
        method: str | None = None,
    ) -> PartitionIngestResult:
        """Load and ingest a product file.

        An unreadable or malformed file is moved to the dead letter
        directory and reported as ``failed``; store errors propagate.
        """
        try:
            product_file = load_product_file(file_path, source=source, method=method)
        except SourceFileError as e:
            logger.error("Failed to load %s: %s", file_path, e)
            self._dead_letter(file_path)
            return PartitionIngestResult(status="failed", file_name=file_path.name, reason=str(e))

        return await self.ingest(product_file, batch_id)

    def _dead_letter(self, file_path: Path) -> None:
        if self.dead_letter_dir is None or not file_path.exists():
            return
        self.dead_letter_dir.mkdir(parents=True, exist_ok=True)
        try:
            shutil.move(str(file_path), str(self.dead_letter_dir / file_path.name))
        except OSError as move_err:
            logger.error("Failed to move %s to dead letter: %s", file_path, move_err)
