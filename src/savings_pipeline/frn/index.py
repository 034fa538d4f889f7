"""In-memory FRN name index built from the ``frn_lookup_cache`` table.

The lookup cache is a materialised view over the reference tables: each
row maps one normalized search name to an FRN.  ``rebuild_lookup_cache``
regenerates it; ``load_frn_index`` reads it into an ``FRNIndex`` that
the resolver queries without touching the database.  The index is
read-only once built, so lookups are safe to share.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass

from rapidfuzz import fuzz, process
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from savings_pipeline.config.pipeline import NormalizationConfig
from savings_pipeline.frn.normalizer import normalize_name
from savings_pipeline.models.frn_institution import FRNInstitution
from savings_pipeline.models.frn_lookup_cache import FRNLookupCache
from savings_pipeline.models.frn_manual_override import FRNManualOverride
from savings_pipeline.models.frn_shared_brand import FRNSharedBrand

MANUAL_OVERRIDE = "manual_override"
DIRECT_MATCH = "direct_match"
NAME_VARIATION = "name_variation"
SHARED_BRAND = "shared_brand"

# match_type -> (confidence, priority_rank); overrides carry their own confidence
CACHE_RANKS = {
    MANUAL_OVERRIDE: (None, 1),
    DIRECT_MATCH: (1.0, 2),
    NAME_VARIATION: (0.95, 3),
    SHARED_BRAND: (1.0, 4),
}

EXACT_MATCH_TYPES = frozenset({MANUAL_OVERRIDE, DIRECT_MATCH, NAME_VARIATION})
ALIAS_MATCH_TYPES = frozenset({SHARED_BRAND})


@dataclass(frozen=True)
class IndexEntry:
    frn: str
    canonical_name: str
    search_name: str
    match_type: str
    confidence: float
    priority_rank: int


class FRNIndex:
    """Exact, alias and fuzzy lookups over normalized institution names."""

    def __init__(self, entries: list[IndexEntry]) -> None:
        self.entries = sorted(entries, key=lambda e: (e.priority_rank, e.search_name, e.frn))
        self._exact: dict[str, IndexEntry] = {}
        self._alias: dict[str, IndexEntry] = {}
        self._by_name: dict[str, list[IndexEntry]] = defaultdict(list)
        for entry in self.entries:
            target = self._exact if entry.match_type in EXACT_MATCH_TYPES else self._alias
            # Entries are sorted by priority, so the first one per name wins
            target.setdefault(entry.search_name, entry)
            self._by_name[entry.search_name].append(entry)
        self._names = list(self._by_name)

    def __len__(self) -> int:
        return len(self.entries)

    def lookup_exact(self, normalized_name: str) -> IndexEntry | None:
        return self._exact.get(normalized_name)

    def lookup_alias(self, normalized_name: str) -> IndexEntry | None:
        return self._alias.get(normalized_name)

    def fuzzy_candidates(
        self,
        normalized_name: str,
        threshold: float,
        limit: int,
    ) -> list[tuple[IndexEntry, float]]:
        """Return up to ``limit`` (entry, similarity) pairs, one per FRN.

        Similarity is rapidfuzz ``token_sort_ratio`` scaled to [0, 1];
        pairs below ``threshold`` are dropped.  Results are ordered by
        similarity descending, then FRN.
        """
        if not normalized_name or not self._names:
            return []

        matches = process.extract(
            normalized_name,
            self._names,
            scorer=fuzz.token_sort_ratio,
            score_cutoff=threshold * 100,
            limit=None,
        )

        best_per_frn: dict[str, tuple[IndexEntry, float]] = {}
        for name, score, _ in matches:
            similarity = round(score / 100.0, 4)
            for entry in self._by_name[name]:
                current = best_per_frn.get(entry.frn)
                if current is None or similarity > current[1]:
                    best_per_frn[entry.frn] = (entry, similarity)

        ranked = sorted(best_per_frn.values(), key=lambda pair: (-pair[1], pair[0].frn))
        return ranked[:limit]


async def rebuild_lookup_cache(session: AsyncSession, normalization: NormalizationConfig) -> int:
    """Regenerate ``frn_lookup_cache`` from the reference tables.

    Must be called within an active ``session.begin()`` context.

    Returns:
        Number of cache rows written.
    """
    await session.execute(delete(FRNLookupCache))

    institutions = (await session.execute(select(FRNInstitution))).scalars().all()
    firm_names = {inst.frn: inst.firm_name for inst in institutions}
    overrides = (await session.execute(select(FRNManualOverride))).scalars().all()
    brands = (await session.execute(select(FRNSharedBrand))).scalars().all()

    rows: dict[tuple[str, str, str], FRNLookupCache] = {}

    def add(frn: str, canonical: str, raw_name: str, match_type: str, confidence: float | None = None) -> None:
        search_name = normalize_name(raw_name, normalization)
        if not search_name:
            return
        default_confidence, rank = CACHE_RANKS[match_type]
        key = (frn, search_name, match_type)
        if key in rows:
            return
        rows[key] = FRNLookupCache(
            frn=frn,
            canonical_name=canonical,
            search_name=search_name,
            match_type=match_type,
            confidence_score=confidence if confidence is not None else default_confidence,
            priority_rank=rank,
        )

    for override in overrides:
        canonical = override.firm_name or firm_names.get(override.frn) or override.scraped_name
        add(override.frn, canonical, override.scraped_name, MANUAL_OVERRIDE, override.confidence_score)

    for inst in institutions:
        direct_name = normalize_name(inst.firm_name, normalization)
        add(inst.frn, inst.firm_name, inst.firm_name, DIRECT_MATCH)
        for variation in inst.name_variations or []:
            if normalize_name(variation, normalization) != direct_name:
                add(inst.frn, inst.firm_name, variation, NAME_VARIATION)

    for brand in brands:
        canonical = firm_names.get(brand.primary_frn)
        if canonical is None:
            continue
        if normalize_name(brand.trading_name, normalization) == normalize_name(canonical, normalization):
            continue
        add(brand.primary_frn, canonical, brand.trading_name, SHARED_BRAND)

    session.add_all(rows.values())
    await session.flush()
    return len(rows)


async def load_frn_index(session: AsyncSession) -> FRNIndex:
    result = await session.execute(select(FRNLookupCache))
    return FRNIndex(
        [
            IndexEntry(
                frn=row.frn,
                canonical_name=row.canonical_name,
                search_name=row.search_name,
                match_type=row.match_type,
                confidence=row.confidence_score,
                priority_rank=row.priority_rank,
            )
            for row in result.scalars()
        ]
    )
