"""Typed payloads for every audit record kind.

Each audit kind is a pydantic model tagged by ``kind``; ``AuditPayload``
is the discriminated union over all of them.  The recorder validates a
payload before writing it, and the trail validator re-validates what it
reads back, so audit JSON columns are never treated as opaque blobs.
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictFloat, StrictInt, StrictStr, TypeAdapter

Score = Annotated[float, Field(ge=0.0, le=1.0)]


class _Strict(BaseModel):
    model_config = ConfigDict(strict=True, extra="forbid")


class ValidationDetail(_Strict):
    field: StrictStr
    rule: StrictStr
    passed: StrictBool
    message: StrictStr | None = None


class NormalizationChange(BaseModel):
    model_config = ConfigDict(extra="forbid")

    original: object = None
    normalized: object = None


class NormalizationStep(_Strict):
    action: StrictStr
    before: StrictStr
    after: StrictStr


class FRNCandidatePayload(_Strict):
    frn: StrictStr
    matched_name: StrictStr
    confidence: Score
    match_type: Literal["exact_match", "fuzzy_match", "alias_match"]


class QualityScoreDistribution(_Strict):
    mean: StrictFloat | StrictInt
    median: StrictFloat | StrictInt
    min: StrictFloat | StrictInt
    max: StrictFloat | StrictInt
    count: StrictInt


class ComparisonMetrics(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    reason: StrictStr
    rate_delta: float | None = Field(None, alias="rateDelta")
    quality_delta: float | None = Field(None, alias="qualityDelta")


class RejectedProduct(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    product_id: StrictStr = Field(alias="productId")
    platform: StrictStr
    bank_name: StrictStr = Field(alias="bankName")
    aer_rate: float | None = Field(alias="aerRate")
    rejection_reason: StrictStr = Field(alias="rejectionReason")
    quality_score: Score | None = Field(alias="qualityScore")
    compared_to: StrictStr = Field(alias="comparedTo")
    comparison_metrics: ComparisonMetrics = Field(alias="comparisonMetrics")


class IngestionAuditPayload(BaseModel):
    kind: Literal["ingestion"] = "ingestion"
    product_id: StrictStr
    validation_status: Literal["valid", "invalid"]
    validation_details: list[ValidationDetail]
    rejection_reasons: list[StrictStr]
    normalization_applied: dict[str, NormalizationChange]
    data_completeness_score: Score | None = None
    source_reliability: Score | None = None

    def check_consistency(self) -> list[str]:
        """Rejection reasons must be present iff the record is invalid."""
        problems = []
        if self.validation_status == "invalid" and not self.rejection_reasons:
            problems.append("invalid record without rejection_reasons")
        if self.validation_status == "valid" and self.rejection_reasons:
            problems.append("valid record with rejection_reasons")
        if not self.validation_details:
            problems.append("validation_details is empty")
        return problems


class MatchingAuditPayload(BaseModel):
    kind: Literal["frn_matching"] = "frn_matching"
    product_id: StrictStr
    original_bank_name: StrictStr
    normalized_bank_name: StrictStr
    normalization_steps: list[NormalizationStep]
    candidate_frns: list[FRNCandidatePayload]
    decision_routing: Literal["auto_assigned", "research_queue", "manual_override"]
    final_frn: StrictStr | None
    final_confidence: Score
    database_query_method: Literal["exact_match", "fuzzy_match", "alias_match", "no_match"]
    processing_time_ms: Annotated[float, Field(ge=0.0)]

    def check_consistency(self) -> list[str]:
        """Confidence is zero iff no FRN was assigned."""
        problems = []
        if self.final_frn is None and self.final_confidence != 0:
            problems.append("final_confidence must be 0 when final_frn is null")
        if self.final_frn is not None and self.final_confidence == 0:
            problems.append("final_confidence is 0 for an assigned FRN")
        if self.final_frn is None and self.decision_routing != "research_queue":
            problems.append("unassigned product not routed to research_queue")
        return problems


class DeduplicationSummaryPayload(BaseModel):
    kind: Literal["deduplication_summary"] = "deduplication_summary"
    input_products_count: Annotated[int, Field(ge=0)]
    unique_business_keys: Annotated[int, Field(ge=0)]
    duplicate_groups_identified: Annotated[int, Field(ge=0)]
    business_key_fields: list[StrictStr]
    quality_algorithm: StrictStr
    quality_score_distribution: QualityScoreDistribution
    products_selected: Annotated[int, Field(ge=0)]
    products_rejected: Annotated[int, Field(ge=0)]
    selection_criteria: dict[str, object]
    fscs_validation_performed: bool
    banks_preserved: Annotated[int, Field(ge=0)]
    platforms_preserved: Annotated[int, Field(ge=0)]
    direct_platform_products: Annotated[int, Field(ge=0)]
    fscs_compliance_status: Literal["compliant", "violations_flagged", "not_checked"]
    fscs_violations: list[StrictStr]
    processing_time_ms: Annotated[float, Field(ge=0.0)]
    business_key_generation_time_ms: Annotated[float, Field(ge=0.0)]
    quality_scoring_time_ms: Annotated[float, Field(ge=0.0)]
    selection_time_ms: Annotated[float, Field(ge=0.0)]


class DeduplicationGroupPayload(BaseModel):
    kind: Literal["deduplication_group"] = "deduplication_group"
    business_key: StrictStr
    products_in_group: Annotated[int, Field(ge=1)]
    platforms_in_group: list[StrictStr]
    sources_in_group: list[StrictStr]
    selected_product_id: StrictStr
    selected_product_platform: StrictStr
    selected_product_source: StrictStr
    selection_reason: Literal[
        "single_product",
        "preferred_platform",
        "platform_separation",
        "fscs_bank_separation",
        "quality_ranked",
    ]
    quality_scores: dict[str, Score | None]
    rejected_products: list[RejectedProduct]

    def check_consistency(self) -> list[str]:
        problems = []
        rejected_ids = [r.product_id for r in self.rejected_products]
        if self.products_in_group != 1 + len(rejected_ids):
            problems.append(
                f"products_in_group={self.products_in_group} but {len(rejected_ids)} rejected products"
            )
        if self.selected_product_id in rejected_ids:
            problems.append(f"selected product {self.selected_product_id} is also rejected")
        missing = {self.selected_product_id, *rejected_ids} - set(self.quality_scores)
        if missing:
            problems.append(f"quality_scores missing {sorted(missing)}")
        return problems


AuditPayload = Annotated[
    Union[
        IngestionAuditPayload,
        MatchingAuditPayload,
        DeduplicationSummaryPayload,
        DeduplicationGroupPayload,
    ],
    Field(discriminator="kind"),
]

audit_payload_adapter: TypeAdapter[AuditPayload] = TypeAdapter(AuditPayload)
