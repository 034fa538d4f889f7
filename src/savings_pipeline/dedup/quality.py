"""Quality scoring of enriched products.

Each factor is scaled to [0, 1]; the score is the weighted sum of the
factors plus a bonus for products with an assigned FRN, capped at
``quality_score_max``.  Factors with unknown inputs (no deposit limits,
no timestamp) fall back to ``neutral_score``.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from datetime import datetime
from numbers import Real

from savings_pipeline.config.pipeline import DeduplicationConfig

QUALITY_ALGORITHM = "weighted_factors_v1"


class UnscorableProductError(ValueError):
    """Raised when a product's scoring inputs are malformed."""


@dataclass(frozen=True)
class QualityBreakdown:
    rate: float
    platform: float
    completeness: float
    reliability: float
    balance_fit: float
    freshness: float
    frn_bonus: float
    total: float

    def to_dict(self) -> dict:
        return asdict(self)


def _clamp(value: float) -> float:
    return min(max(value, 0.0), 1.0)


def _numeric(product: dict, name: str) -> float | None:
    value = product.get(name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, Real):
        raise UnscorableProductError(f"{name} is not numeric: {value!r}")
    value = float(value)
    if math.isnan(value):
        raise UnscorableProductError(f"{name} is NaN")
    return value


def balance_fit(min_deposit: float | None, max_deposit: float | None, target: float, neutral: float) -> float:
    """How well the deposit limits accommodate ``target``."""
    if min_deposit is None and max_deposit is None:
        return neutral
    if min_deposit is not None and min_deposit > target:
        return 0.0
    if max_deposit is not None and max_deposit < target:
        return _clamp(max_deposit / target) if target > 0 else 1.0
    return 1.0


def freshness(last_updated: datetime | None, now: datetime, horizon_days: int, neutral: float) -> float:
    """Linear decay from 1.0 (just updated) to 0.0 at ``horizon_days``."""
    if last_updated is None:
        return neutral
    age_days = (now - last_updated).total_seconds() / 86400
    return _clamp(1.0 - age_days / horizon_days) if horizon_days > 0 else 1.0


def completeness(product: dict, fields: list[str]) -> float:
    if not fields:
        return 1.0
    present = sum(1 for name in fields if product.get(name) not in (None, ""))
    return present / len(fields)


def score_product(product: dict, config: DeduplicationConfig, now: datetime) -> QualityBreakdown:
    """Score one product.

    Raises:
        UnscorableProductError: If the AER is missing or not a finite number,
            or another numeric input is malformed.
    """
    aer = _numeric(product, "aer_rate")
    if aer is None or math.isinf(aer):
        raise UnscorableProductError(f"aer_rate is not scorable: {product.get('aer_rate')!r}")

    weights = config.weights
    platform = (product.get("platform") or "").lower()
    factors = {
        "rate": _clamp(aer / config.max_rate_for_scoring) if config.max_rate_for_scoring > 0 else 0.0,
        "platform": config.platform_reliability.get(platform, config.default_platform_reliability),
        "completeness": completeness(product, config.completeness_fields),
        "reliability": _clamp(_numeric(product, "confidence_score") or 0.0),
        "balance_fit": balance_fit(
            _numeric(product, "min_deposit"),
            _numeric(product, "max_deposit"),
            config.target_balance,
            config.neutral_score,
        ),
        "freshness": freshness(
            product.get("last_updated"),
            now,
            config.freshness_horizon_days,
            config.neutral_score,
        ),
    }
    weighted = sum(getattr(weights, name) * value for name, value in factors.items())
    bonus = config.frn_quality_bonus if product.get("frn") else 0.0
    total = round(min(max(weighted + bonus, 0.0), config.quality_score_max), 4)
    return QualityBreakdown(
        **{name: round(value, 4) for name, value in factors.items()},
        frn_bonus=bonus,
        total=total,
    )
