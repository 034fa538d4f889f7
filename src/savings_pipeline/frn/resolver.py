"""FRN resolution for one institution name.

Lookup order is exact -> alias (shared brand) -> fuzzy.  The first tier
that yields a candidate decides ``database_query_method``.  The best
candidate is assigned when its confidence reaches the auto-assign
threshold or when it comes from a manual override; otherwise the product
keeps a null FRN with confidence 0 and is routed to the research queue.

``resolve_name`` is PURE apart from timing: it reads only the in-memory
``FRNIndex``.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from savings_pipeline.config.pipeline import FRNMatchingConfig
from savings_pipeline.frn.index import MANUAL_OVERRIDE, FRNIndex
from savings_pipeline.frn.normalizer import NormalizationStep, normalize_institution_name


@dataclass(frozen=True)
class FRNCandidate:
    frn: str
    matched_name: str
    confidence: float
    match_type: str  # exact_match, alias_match, fuzzy_match

    def to_dict(self) -> dict:
        return {
            "frn": self.frn,
            "matched_name": self.matched_name,
            "confidence": self.confidence,
            "match_type": self.match_type,
        }


@dataclass
class Resolution:
    original_name: str
    normalized_name: str
    steps: list[NormalizationStep] = field(default_factory=list)
    candidates: list[FRNCandidate] = field(default_factory=list)
    frn: str | None = None
    confidence: float = 0.0
    query_method: str = "no_match"
    routing: str = "research_queue"
    processing_time_ms: float = 0.0

    @property
    def assigned(self) -> bool:
        return self.frn is not None

    @property
    def best_candidate(self) -> FRNCandidate | None:
        return self.candidates[0] if self.candidates else None


def _confidence(value: float) -> float:
    return round(min(max(value, 0.0), 1.0), 4)


def resolve_name(bank_name: str, index: FRNIndex, config: FRNMatchingConfig) -> Resolution:
    """Resolve ``bank_name`` to an FRN.

    Args:
        bank_name: Institution name as scraped (whitespace already collapsed).
        index: Name index built from the lookup cache.
        config: Thresholds, confidences and tier switches.

    Returns:
        A ``Resolution``; ``confidence`` is 0 exactly when ``frn`` is None.
    """
    start = time.perf_counter()
    normalized = normalize_institution_name(bank_name, config.normalization)
    resolution = Resolution(
        original_name=bank_name,
        normalized_name=normalized.normalized,
        steps=normalized.steps,
    )
    name = normalized.normalized
    manual = False

    if config.enabled and name:
        exact = index.lookup_exact(name)
        alias = index.lookup_alias(name) if exact is None and config.enable_alias else None
        if exact is not None:
            manual = exact.match_type == MANUAL_OVERRIDE
            factor = 1.0 if manual else config.exact_match_confidence
            resolution.candidates = [
                FRNCandidate(exact.frn, exact.canonical_name, _confidence(exact.confidence * factor), "exact_match")
            ]
            resolution.query_method = "exact_match"
        elif alias is not None:
            resolution.candidates = [
                FRNCandidate(
                    alias.frn,
                    alias.canonical_name,
                    _confidence(alias.confidence * config.alias_match_confidence),
                    "alias_match",
                )
            ]
            resolution.query_method = "alias_match"
        elif config.enable_fuzzy:
            pairs = index.fuzzy_candidates(name, config.fuzzy_threshold, config.max_candidates)
            resolution.candidates = [
                FRNCandidate(
                    entry.frn,
                    entry.canonical_name,
                    _confidence(similarity * config.fuzzy_match_confidence),
                    "fuzzy_match",
                )
                for entry, similarity in pairs
            ]
            if resolution.candidates:
                resolution.query_method = "fuzzy_match"

    best = resolution.best_candidate
    if best is not None and best.confidence > 0 and (manual or best.confidence >= config.auto_assign_threshold):
        resolution.frn = best.frn
        resolution.confidence = best.confidence
        resolution.routing = "manual_override" if manual else "auto_assigned"

    resolution.processing_time_ms = round((time.perf_counter() - start) * 1000, 3)
    return resolution
