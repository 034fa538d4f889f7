"""Deduplication over all enriched products.

``run_deduplication`` is PURE: it takes product dicts (as loaded by
``worker.persistence.load_enriched_products``) and returns selections plus
the summary figures the deduplication audit needs.  Persistence happens
in the orchestrator.
"""

from __future__ import annotations

import statistics
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone

from savings_pipeline.config.pipeline import DeduplicationConfig, NormalizationConfig
from savings_pipeline.dedup.business_key import check_key_fields, generate_business_key
from savings_pipeline.dedup.policies import PolicyOutcome, ScoredProduct, Selection, platform_category, select_group
from savings_pipeline.dedup.quality import QUALITY_ALGORITHM, UnscorableProductError, score_product
from savings_pipeline.frn.normalizer import normalize_name

TIE_BREAKERS = ["quality_score desc", "last_updated desc", "product_id asc"]


@dataclass
class DeduplicationTimings:
    business_key_ms: float = 0.0
    quality_scoring_ms: float = 0.0
    selection_ms: float = 0.0

    @property
    def total_ms(self) -> float:
        return round(self.business_key_ms + self.quality_scoring_ms + self.selection_ms, 3)


@dataclass
class DeduplicationResult:
    selections: list[Selection] = field(default_factory=list)
    input_count: int = 0
    unique_business_keys: int = 0
    duplicate_groups: int = 0
    key_generation_errors: int = 0
    scoring_errors: int = 0
    business_key_fields: list[str] = field(default_factory=list)
    quality_algorithm: str = QUALITY_ALGORITHM
    quality_distribution: dict = field(default_factory=dict)
    selection_criteria: dict = field(default_factory=dict)
    fscs_validation_performed: bool = False
    fscs_violations: list[str] = field(default_factory=list)
    banks_preserved: int = 0
    platforms_preserved: int = 0
    direct_platform_products: int = 0
    timings: DeduplicationTimings = field(default_factory=DeduplicationTimings)

    @property
    def selected(self) -> list[ScoredProduct]:
        return [s.survivor for s in self.selections]

    @property
    def rejected_count(self) -> int:
        return sum(len(s.rejections) for s in self.selections)

    @property
    def fscs_compliance_status(self) -> str:
        if not self.fscs_validation_performed:
            return "not_checked"
        return "violations_flagged" if self.fscs_violations else "compliant"


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 3)


def quality_distribution(scores: list[float]) -> dict:
    if not scores:
        return {"mean": 0.0, "median": 0.0, "min": 0.0, "max": 0.0, "count": 0}
    return {
        "mean": round(float(statistics.fmean(scores)), 4),
        "median": round(float(statistics.median(scores)), 4),
        "min": round(float(min(scores)), 4),
        "max": round(float(max(scores)), 4),
        "count": len(scores),
    }


def selection_criteria(config: DeduplicationConfig) -> dict:
    """Snapshot of the settings that drove selection, stored with the audit."""
    return {
        "business_key_fields": list(config.business_key_fields),
        "weights": config.weights.model_dump(),
        "frn_quality_bonus": config.frn_quality_bonus,
        "policy_order": [policy.value for policy in config.policy_order],
        "preferred_platforms": dict(config.preferred_platforms),
        "platform_separation_enabled": config.platform_separation_enabled,
        "platform_separation_key": config.platform_separation_key,
        "fscs_validation_enabled": config.fscs_validation_enabled,
        "fscs_limit": config.fscs_limit,
        "tie_breakers": TIE_BREAKERS,
    }


def run_deduplication(
    products: list[dict],
    config: DeduplicationConfig,
    normalization: NormalizationConfig,
    now: datetime | None = None,
) -> DeduplicationResult:
    """Group products by business key and select survivors.

    Args:
        products: Enriched product dicts; each needs ``product_id``.
        config: Deduplication settings.
        normalization: Institution name normalization (shared with FRN matching).
        now: Reference time for freshness; defaults to the current UTC time.

    Returns:
        A ``DeduplicationResult`` whose selections cover every input
        product exactly once, as survivor or rejected member.

    Raises:
        ConfigurationError: If ``business_key_fields`` names an unknown field.
    """
    check_key_fields(config.business_key_fields)
    now = now or datetime.now(timezone.utc).replace(tzinfo=None)
    result = DeduplicationResult(
        input_count=len(products),
        business_key_fields=list(config.business_key_fields),
        selection_criteria=selection_criteria(config),
        fscs_validation_performed=config.fscs_validation_enabled,
    )

    # 1. Business keys
    start = time.perf_counter()
    scored: list[ScoredProduct] = []
    for product in sorted(products, key=lambda p: p["product_id"]):
        try:
            key = generate_business_key(product, config.business_key_fields, normalization)
        except (ValueError, TypeError):
            key = f"unkeyed|{product['product_id']}"
            result.key_generation_errors += 1
        institution = product.get("frn") or normalize_name(product.get("bank_name") or "", normalization)
        scored.append(ScoredProduct(product=product, business_key=key, institution=institution))
    result.timings.business_key_ms = _elapsed_ms(start)

    # 2. Quality scores
    start = time.perf_counter()
    for item in scored:
        try:
            item.breakdown = score_product(item.product, config, now)
            item.quality = item.breakdown.total
        except UnscorableProductError as e:
            item.error = str(e)
            result.scoring_errors += 1
    result.timings.quality_scoring_ms = _elapsed_ms(start)

    # 3. Grouping and selection
    start = time.perf_counter()
    groups: dict[str, list[ScoredProduct]] = {}
    for item in scored:
        groups.setdefault(item.business_key, []).append(item)

    for key in sorted(groups):
        outcome: PolicyOutcome = select_group(key, groups[key], config)
        result.selections.extend(outcome.selections)
        result.fscs_violations.extend(outcome.violations)
    result.timings.selection_ms = _elapsed_ms(start)

    result.unique_business_keys = len(groups)
    result.duplicate_groups = sum(1 for members in groups.values() if len(members) > 1)
    result.quality_distribution = quality_distribution([i.quality for i in scored if i.quality is not None])
    survivors = result.selected
    result.banks_preserved = len({s.institution for s in survivors})
    result.platforms_preserved = len({s.platform for s in survivors})
    result.direct_platform_products = sum(
        1 for s in survivors if platform_category(s.platform, config) == "direct"
    )
    return result
