"""Selection policies for a group of products sharing a business key.

Every policy is a pure function of a group and the deduplication config.
``select_group`` applies the separation policies in ``policy_order``;
a policy that triggers partitions the group and hands each partition to
the remaining policies, so with the default order an FSCS split happens
first and platform handling runs inside each institution.  Groups that
no separation policy claims are ranked by quality.

Ranking is deterministic: quality score descending, then most recent
``last_updated``, then smallest product id.
"""

from __future__ import annotations

import enum
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from savings_pipeline.config.pipeline import DeduplicationConfig, SelectionPolicy
from savings_pipeline.dedup.quality import QualityBreakdown


class SelectionReason(str, enum.Enum):
    SINGLE_PRODUCT = "single_product"
    PREFERRED_PLATFORM = "preferred_platform"
    PLATFORM_SEPARATION = "platform_separation"
    FSCS_BANK_SEPARATION = "fscs_bank_separation"
    QUALITY_RANKED = "quality_ranked"


# Rejection reasons recorded on rejected products
LOWER_QUALITY = "lower_quality_score"
OLDER_LISTING = "older_listing"
PRODUCT_ID_TIEBREAK = "product_id_tiebreak"
NON_PREFERRED_PLATFORM = "non_preferred_platform"
OUTSIDE_RATE_TOLERANCE = "outside_rate_tolerance"
FSCS_LIMIT_EXCEEDED = "fscs_limit_exceeded"


@dataclass
class ScoredProduct:
    """An enriched product with its business key and quality score.

    ``quality`` is ``None`` when scoring failed; ``error`` then says why.
    ``institution`` is the FRN when assigned, else the normalized bank name.
    """

    product: dict
    business_key: str
    institution: str
    quality: float | None = None
    breakdown: QualityBreakdown | None = None
    error: str | None = None

    @property
    def product_id(self) -> str:
        return self.product["product_id"]

    @property
    def platform(self) -> str:
        return self.product.get("platform") or ""

    @property
    def source(self) -> str:
        return self.product.get("source") or ""

    @property
    def bank_name(self) -> str:
        return self.product.get("bank_name") or ""

    @property
    def aer_rate(self) -> Any:
        return self.product.get("aer_rate")

    @property
    def last_updated(self) -> datetime | None:
        return self.product.get("last_updated")

    @property
    def max_deposit(self) -> Any:
        return self.product.get("max_deposit")


@dataclass
class Rejection:
    member: ScoredProduct
    reason: str
    compared_to: ScoredProduct
    metrics: dict

    def to_dict(self) -> dict:
        return {
            "productId": self.member.product_id,
            "platform": self.member.platform,
            "bankName": self.member.bank_name,
            "aerRate": self.member.aer_rate,
            "rejectionReason": self.reason,
            "qualityScore": self.member.quality,
            "comparedTo": self.compared_to.product_id,
            "comparisonMetrics": self.metrics,
        }


@dataclass
class Selection:
    """One selection unit: a survivor plus the members it displaced."""

    business_key: str
    survivor: ScoredProduct
    reason: SelectionReason
    rejections: list[Rejection] = field(default_factory=list)

    @property
    def members(self) -> list[ScoredProduct]:
        return [self.survivor] + [r.member for r in self.rejections]


@dataclass
class PolicyOutcome:
    selections: list[Selection] = field(default_factory=list)
    violations: list[str] = field(default_factory=list)


def platform_category(platform: str, config: DeduplicationConfig) -> str:
    return "direct" if platform in config.direct_platforms else "aggregator"


def rank_members(members: list[ScoredProduct]) -> list[ScoredProduct]:
    """Best first: quality desc, last_updated desc, product_id asc."""
    ordered = sorted(members, key=lambda m: m.product_id)
    # Stable sorts, least significant key first
    ordered.sort(key=lambda m: m.last_updated or datetime.min, reverse=True)
    ordered.sort(key=lambda m: m.quality if m.quality is not None else -1.0, reverse=True)
    return ordered


def _delta(a: Any, b: Any) -> float | None:
    if isinstance(a, (int, float)) and isinstance(b, (int, float)):
        return round(float(a) - float(b), 4)
    return None


def comparison_metrics(
    member: ScoredProduct,
    winner: ScoredProduct,
    reason: str,
    config: DeduplicationConfig,
) -> dict:
    """Why ``member`` lost to ``winner``; deltas are winner minus member."""
    return {
        "reason": reason,
        "rateDelta": _delta(winner.aer_rate, member.aer_rate),
        "qualityDelta": _delta(winner.quality, member.quality),
        "samePlatform": member.platform == winner.platform,
        "platformCategory": platform_category(member.platform, config),
    }


def ranking_reason(member: ScoredProduct, winner: ScoredProduct) -> str:
    if (member.quality or 0.0) < (winner.quality or 0.0):
        return LOWER_QUALITY
    if (member.last_updated or datetime.min) < (winner.last_updated or datetime.min):
        return OLDER_LISTING
    return PRODUCT_ID_TIEBREAK


def _reject(
    members: list[ScoredProduct],
    winner: ScoredProduct,
    config: DeduplicationConfig,
    reason_for: Callable[[ScoredProduct], str],
) -> list[Rejection]:
    rejections = []
    for member in members:
        if member is winner:
            continue
        reason = reason_for(member)
        rejections.append(Rejection(member, reason, winner, comparison_metrics(member, winner, reason, config)))
    return rejections


def quality_ranked(
    business_key: str,
    members: list[ScoredProduct],
    config: DeduplicationConfig,
) -> Selection:
    """Keep the best-ranked member, reject the rest."""
    ranked = rank_members(members)
    winner = ranked[0]
    if len(ranked) == 1:
        return Selection(business_key, winner, SelectionReason.SINGLE_PRODUCT)
    rejections = _reject(ranked, winner, config, lambda m: ranking_reason(m, winner))
    return Selection(business_key, winner, SelectionReason.QUALITY_RANKED, rejections)


def _partition(members: list[ScoredProduct], key: Callable[[ScoredProduct], str]) -> dict[str, list[ScoredProduct]]:
    parts: dict[str, list[ScoredProduct]] = {}
    for member in members:
        parts.setdefault(key(member), []).append(member)
    return dict(sorted(parts.items()))


def _exposure(member: ScoredProduct, limit: float) -> float:
    """Protected amount one holding can use, capped at the limit.

    An unknown maximum deposit contributes nothing.
    """
    deposit = member.max_deposit
    if isinstance(deposit, (int, float)) and not isinstance(deposit, bool) and deposit > 0:
        return min(float(deposit), limit)
    return 0.0


def _relabel(outcome: PolicyOutcome, reason: SelectionReason) -> None:
    for selection in outcome.selections:
        if selection.reason in (SelectionReason.SINGLE_PRODUCT, SelectionReason.QUALITY_RANKED):
            selection.reason = reason


def _trim_to_limit(
    business_key: str,
    institution: str,
    outcome: PolicyOutcome,
    config: DeduplicationConfig,
) -> bool:
    """Keep the best holdings whose combined exposure fits the FSCS limit.

    Each selection survivor is one distinct holding. Holdings beyond the
    limit are folded into the best holding's selection as rejections and
    reported as violations. Returns ``True`` when anything was trimmed.
    """
    if len(outcome.selections) < 2:
        return False
    if any(s.survivor.quality is None for s in outcome.selections):
        return False
    limit = config.fscs_limit
    by_survivor = {s.survivor.product_id: s for s in outcome.selections}
    ranked = [by_survivor[m.product_id] for m in rank_members([s.survivor for s in outcome.selections])]
    if sum(_exposure(s.survivor, limit) for s in ranked) <= limit:
        return False

    best = ranked[0]
    kept = [best]
    used = _exposure(best.survivor, limit)
    for selection in ranked[1:]:
        exposure = _exposure(selection.survivor, limit)
        if used + exposure <= limit:
            kept.append(selection)
            used += exposure
            continue
        member = selection.survivor
        best.rejections.append(
            Rejection(
                member,
                FSCS_LIMIT_EXCEEDED,
                best.survivor,
                comparison_metrics(member, best.survivor, FSCS_LIMIT_EXCEEDED, config),
            )
        )
        best.rejections.extend(selection.rejections)
        outcome.violations.append(
            f"{business_key}: {member.product_id} displaced; institution {institution} holdings "
            f"would use {used + exposure:.0f} of FSCS limit {limit:.0f}"
        )
    outcome.selections = [s for s in outcome.selections if s in kept]
    for selection in kept:
        selection.reason = SelectionReason.FSCS_BANK_SEPARATION
    return True


def fscs_bank_separation(
    business_key: str,
    members: list[ScoredProduct],
    config: DeduplicationConfig,
    remaining: list[SelectionPolicy],
) -> PolicyOutcome | None:
    """Keep each institution's holdings within the FSCS limit.

    The group is first split by institution and each part goes through the
    remaining policies, so every surviving selection is one distinct
    holding (for example one per platform). Duplicate listings of a single
    holding are never an FSCS concern. When one institution keeps several
    holdings whose combined exposure exceeds ``fscs_limit``, only the
    best-ranked subset that fits is kept and the rest are flagged.

    Returns ``None`` when the group has one institution and fits the limit.
    """
    if not config.fscs_validation_enabled:
        return None
    by_institution = _partition(members, lambda m: m.institution)

    outcome = PolicyOutcome()
    trimmed = False
    for institution, group in by_institution.items():
        sub = select_group(business_key, group, config, remaining)
        trimmed = _trim_to_limit(business_key, institution, sub, config) or trimmed
        if len(by_institution) > 1:
            _relabel(sub, SelectionReason.FSCS_BANK_SEPARATION)
        outcome.selections.extend(sub.selections)
        outcome.violations.extend(sub.violations)
    if len(by_institution) < 2 and not trimmed:
        return None
    return outcome


def preferred_platform(
    business_key: str,
    members: list[ScoredProduct],
    config: DeduplicationConfig,
) -> Selection | None:
    """Keep the best member on a preferred platform, unless every preferred
    member is out-rated by a non-preferred one by more than its tolerance."""
    preferred = {name.lower(): tolerance for name, tolerance in config.preferred_platforms.items()}
    candidates = [m for m in members if m.platform in preferred]
    if not candidates:
        return None
    others = [m.aer_rate for m in members if m.platform not in preferred and isinstance(m.aer_rate, (int, float))]
    best_other = max(others) if others else None

    ranked = rank_members(candidates)
    winner = None
    skipped = set()
    for candidate in ranked:
        if best_other is None or candidate.aer_rate + preferred[candidate.platform] >= best_other:
            winner = candidate
            break
        skipped.add(candidate.product_id)
    if winner is None:
        return None

    def reason_for(member: ScoredProduct) -> str:
        if member.platform not in preferred:
            return NON_PREFERRED_PLATFORM
        if member.product_id in skipped:
            return OUTSIDE_RATE_TOLERANCE
        return ranking_reason(member, winner)

    rejections = _reject(rank_members(members), winner, config, reason_for)
    return Selection(business_key, winner, SelectionReason.PREFERRED_PLATFORM, rejections)


def platform_separation(
    business_key: str,
    members: list[ScoredProduct],
    config: DeduplicationConfig,
    remaining: list[SelectionPolicy],
) -> PolicyOutcome | None:
    """Handle a group listed on several platforms.

    A configured preferred platform wins outright; otherwise, when
    separation is enabled, the best member per platform (or per
    direct/aggregator category) is kept.
    """
    if len({m.platform for m in members}) < 2:
        return None

    selection = preferred_platform(business_key, members, config)
    if selection is not None:
        return PolicyOutcome([selection])

    if not config.platform_separation_enabled:
        return None
    if config.platform_separation_key == "category":
        parts = _partition(members, lambda m: platform_category(m.platform, config))
    else:
        parts = _partition(members, lambda m: m.platform)
    if len(parts) < 2:
        return None

    outcome = PolicyOutcome()
    for group in parts.values():
        sub = select_group(business_key, group, config, remaining)
        _relabel(sub, SelectionReason.PLATFORM_SEPARATION)
        outcome.selections.extend(sub.selections)
        outcome.violations.extend(sub.violations)
    return outcome


_POLICIES = {
    SelectionPolicy.FSCS_BANK_SEPARATION: fscs_bank_separation,
    SelectionPolicy.PLATFORM_SEPARATION: platform_separation,
}


def select_group(
    business_key: str,
    members: list[ScoredProduct],
    config: DeduplicationConfig,
    policies: list[SelectionPolicy] | None = None,
) -> PolicyOutcome:
    """Decide survivors for one business-key group.

    Args:
        business_key: Key shared by all members.
        members: Non-empty list of scored products.
        config: Deduplication settings.
        policies: Separation policies still to try; defaults to
            ``config.policy_order``.

    Returns:
        A ``PolicyOutcome`` whose selections cover every member exactly once.
    """
    if policies is None:
        policies = list(config.policy_order)

    unscorable = [m for m in members if m.quality is None]
    if unscorable:
        # Malformed scoring input: no automatic selection in this group
        ids = ", ".join(sorted(m.product_id for m in unscorable))
        return PolicyOutcome(
            [
                Selection(business_key, member, SelectionReason.SINGLE_PRODUCT)
                for member in sorted(members, key=lambda m: m.product_id)
            ],
            [f"{business_key}: quality scoring failed for {ids}; all {len(members)} members kept"],
        )

    if len(members) == 1:
        return PolicyOutcome([Selection(business_key, members[0], SelectionReason.SINGLE_PRODUCT)])

    for position, policy in enumerate(policies):
        outcome = _POLICIES[policy](business_key, members, config, policies[position + 1:])
        if outcome is not None:
            return outcome

    return PolicyOutcome([quality_ranked(business_key, members, config)])
