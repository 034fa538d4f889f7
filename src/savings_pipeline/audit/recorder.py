"""Audit recorder: the single, ordered audit-write sink of a batch.

Every stage writes its audit rows through one ``AuditRecorder`` bound to
the stage's session, so audit rows commit (or roll back) together with
the data they describe.  Payloads are validated against
:mod:`savings_pipeline.audit.schemas` before anything is added to the
session.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from savings_pipeline.audit.schemas import (
    DeduplicationGroupPayload,
    DeduplicationSummaryPayload,
    IngestionAuditPayload,
    MatchingAuditPayload,
)
from savings_pipeline.errors import AuditSchemaError
from savings_pipeline.models.data_corruption_audit import DataCorruptionAudit
from savings_pipeline.models.deduplication_audit import DeduplicationAudit
from savings_pipeline.models.deduplication_group import DeduplicationGroup
from savings_pipeline.models.frn_matching_audit import FRNMatchingAudit
from savings_pipeline.models.ingestion_audit import IngestionAudit

if TYPE_CHECKING:
    from savings_pipeline.dedup.engine import DeduplicationResult
    from savings_pipeline.dedup.policies import Selection
    from savings_pipeline.frn.resolver import Resolution
    from savings_pipeline.ingestion.validator import ValidationOutcome


def _validated(model: type[BaseModel], data: dict) -> dict:
    try:
        payload = model.model_validate(data)
    except ValidationError as e:
        raise AuditSchemaError(f"{model.__name__} rejected: {e}") from e
    problems = payload.check_consistency() if hasattr(payload, "check_consistency") else []
    if problems:
        raise AuditSchemaError(f"{model.__name__} inconsistent: {'; '.join(problems)}")
    return payload.model_dump(mode="json", by_alias=True, exclude={"kind"})


def build_group_payload(selection: Selection) -> dict:
    """Flatten a selection into the ``deduplication_groups`` column layout."""
    members = selection.members
    return {
        "business_key": selection.business_key,
        "products_in_group": len(members),
        "platforms_in_group": sorted({m.platform for m in members}),
        "sources_in_group": sorted({m.source for m in members}),
        "selected_product_id": selection.survivor.product_id,
        "selected_product_platform": selection.survivor.platform,
        "selected_product_source": selection.survivor.source,
        "selection_reason": selection.reason.value,
        "quality_scores": {m.product_id: m.quality for m in members},
        "rejected_products": [rejection.to_dict() for rejection in selection.rejections],
    }


class AuditRecorder:
    """Writes audit rows for one batch into one session, in call order."""

    def __init__(self, session: AsyncSession, batch_id: str) -> None:
        self.session = session
        self.batch_id = batch_id
        self.records_written = 0

    def _add(self, row) -> None:
        self.session.add(row)
        self.records_written += 1

    def record_ingestion(
        self,
        source: str,
        method: str,
        product_id: str,
        record_index: int,
        outcome: ValidationOutcome,
        source_reliability: float | None = None,
    ) -> None:
        data = _validated(
            IngestionAuditPayload,
            {
                "product_id": product_id,
                "validation_status": "valid" if outcome.valid else "invalid",
                "validation_details": [check.to_dict() for check in outcome.validation_details],
                "rejection_reasons": outcome.rejection_reasons,
                "normalization_applied": outcome.normalization_applied,
                "data_completeness_score": outcome.completeness,
                "source_reliability": source_reliability,
            },
        )
        product = outcome.product or {}
        self._add(
            IngestionAudit(
                batch_id=self.batch_id,
                source=source,
                method=method,
                record_index=record_index,
                bank_name=product.get("bank_name"),
                platform=product.get("platform"),
                **data,
            )
        )

    def record_corruption(
        self,
        source: str,
        method: str,
        affected_count: int,
        total_count: int,
        threshold: float,
    ) -> bool:
        """Record the partition's invalid-record ratio; returns whether it exceeded ``threshold``."""
        ratio = affected_count / total_count if total_count else 0.0
        exceeded = ratio > threshold
        self._add(
            DataCorruptionAudit(
                batch_id=self.batch_id,
                source=source,
                method=method,
                corruption_type="validation_failure",
                affected_count=affected_count,
                total_count=total_count,
                corruption_ratio=round(ratio, 4),
                threshold=threshold,
                threshold_exceeded=exceeded,
                action_taken="continue",
            )
        )
        return exceeded

    def record_matching(self, product_id: str, resolution: Resolution) -> None:
        data = _validated(
            MatchingAuditPayload,
            {
                "product_id": product_id,
                "original_bank_name": resolution.original_name,
                "normalized_bank_name": resolution.normalized_name,
                "normalization_steps": [step.to_dict() for step in resolution.steps],
                "candidate_frns": [candidate.to_dict() for candidate in resolution.candidates],
                "decision_routing": resolution.routing,
                "final_frn": resolution.frn,
                "final_confidence": resolution.confidence,
                "database_query_method": resolution.query_method,
                "processing_time_ms": resolution.processing_time_ms,
            },
        )
        self._add(FRNMatchingAudit(batch_id=self.batch_id, **data))

    def record_deduplication(self, result: DeduplicationResult) -> None:
        """Write the batch summary row followed by one row per selection."""
        timings = result.timings
        summary = _validated(
            DeduplicationSummaryPayload,
            {
                "input_products_count": result.input_count,
                "unique_business_keys": result.unique_business_keys,
                "duplicate_groups_identified": result.duplicate_groups,
                "business_key_fields": result.business_key_fields,
                "quality_algorithm": result.quality_algorithm,
                "quality_score_distribution": result.quality_distribution,
                "products_selected": len(result.selections),
                "products_rejected": result.rejected_count,
                "selection_criteria": result.selection_criteria,
                "fscs_validation_performed": result.fscs_validation_performed,
                "banks_preserved": result.banks_preserved,
                "platforms_preserved": result.platforms_preserved,
                "direct_platform_products": result.direct_platform_products,
                "fscs_compliance_status": result.fscs_compliance_status,
                "fscs_violations": result.fscs_violations,
                "processing_time_ms": timings.total_ms,
                "business_key_generation_time_ms": timings.business_key_ms,
                "quality_scoring_time_ms": timings.quality_scoring_ms,
                "selection_time_ms": timings.selection_ms,
            },
        )
        self._add(DeduplicationAudit(batch_id=self.batch_id, **summary))

        for selection in result.selections:
            data = _validated(DeduplicationGroupPayload, build_group_payload(selection))
            self._add(DeduplicationGroup(batch_id=self.batch_id, **data))
