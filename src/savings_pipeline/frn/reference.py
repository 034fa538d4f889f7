"""Operator changes to FRN reference data.

Every change writes an ``audit_log`` row and rebuilds the lookup cache in
the same transaction, so the next matching run sees it immediately.
"""

from __future__ import annotations

from pathlib import Path

import sqlalchemy as sa
import yaml
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from savings_pipeline.config.pipeline import NormalizationConfig
from savings_pipeline.errors import ConfigurationError, SourceFileError
from savings_pipeline.frn.index import rebuild_lookup_cache
from savings_pipeline.models.audit_log import AuditLog
from savings_pipeline.models.frn_institution import FRNInstitution
from savings_pipeline.models.frn_manual_override import FRNManualOverride
from savings_pipeline.models.frn_shared_brand import FRNSharedBrand

FRN_PATTERN = r"^\d{6,7}$"


class InstitutionEntry(BaseModel):
    frn: str = Field(pattern=FRN_PATTERN)
    firm_name: str = Field(min_length=1)
    name_variations: list[str] = []


class SharedBrandEntry(BaseModel):
    primary_frn: str = Field(pattern=FRN_PATTERN)
    trading_name: str = Field(min_length=1)


class ManualOverrideEntry(BaseModel):
    scraped_name: str = Field(min_length=1)
    frn: str = Field(pattern=FRN_PATTERN)
    firm_name: str | None = None
    confidence_score: float = Field(1.0, gt=0.0, le=1.0)
    notes: str | None = None


class ReferenceData(BaseModel):
    institutions: list[InstitutionEntry] = []
    shared_brands: list[SharedBrandEntry] = []
    manual_overrides: list[ManualOverrideEntry] = []


def load_reference_file(path: Path) -> ReferenceData:
    """Parse a YAML or JSON reference data file."""
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise SourceFileError(f"Cannot read reference data {path}: {e}") from e
    try:
        return ReferenceData.model_validate(raw)
    except ValidationError as e:
        raise SourceFileError(f"Invalid reference data in {path}: {e}") from e


async def _upsert_override(session: AsyncSession, entry: ManualOverrideEntry) -> None:
    result = await session.execute(
        sa.select(FRNManualOverride).where(FRNManualOverride.scraped_name == entry.scraped_name)
    )
    override = result.scalar_one_or_none()
    if override is None:
        session.add(FRNManualOverride(**entry.model_dump()))
        return
    override.frn = entry.frn
    override.firm_name = entry.firm_name
    override.confidence_score = entry.confidence_score
    override.notes = entry.notes


async def load_reference_data(
    session: AsyncSession,
    data: ReferenceData,
    normalization: NormalizationConfig,
    operator: str = "anonymous",
) -> dict:
    """Insert or update reference rows, then rebuild the lookup cache.

    Returns:
        Dict with institution, shared brand, override and cache row counts.
    """
    async with session.begin():
        for inst in data.institutions:
            await session.merge(FRNInstitution(**inst.model_dump()))

        for brand in data.shared_brands:
            result = await session.execute(
                sa.select(FRNSharedBrand).where(FRNSharedBrand.trading_name == brand.trading_name)
            )
            existing = result.scalar_one_or_none()
            if existing is None:
                session.add(FRNSharedBrand(**brand.model_dump()))
            else:
                existing.primary_frn = brand.primary_frn

        for entry in data.manual_overrides:
            await _upsert_override(session, entry)

        await session.flush()
        cache_rows = await rebuild_lookup_cache(session, normalization)
        summary = {
            "institutions": len(data.institutions),
            "shared_brands": len(data.shared_brands),
            "manual_overrides": len(data.manual_overrides),
            "cache_rows": cache_rows,
        }
        session.add(AuditLog(action_type="reference_load", subject=None, operator=operator, details=summary))
    return summary


async def add_manual_override(
    session: AsyncSession,
    entry: ManualOverrideEntry,
    normalization: NormalizationConfig,
    operator: str = "anonymous",
) -> int:
    """Create or replace the override for ``entry.scraped_name``.

    Returns:
        Number of lookup cache rows after the rebuild.
    """
    async with session.begin():
        await _upsert_override(session, entry)
        await session.flush()
        cache_rows = await rebuild_lookup_cache(session, normalization)
        session.add(
            AuditLog(
                action_type="override_add",
                subject=entry.scraped_name,
                operator=operator,
                details=entry.model_dump(),
            )
        )
    return cache_rows


async def remove_manual_override(
    session: AsyncSession,
    scraped_name: str,
    normalization: NormalizationConfig,
    operator: str = "anonymous",
) -> None:
    """Delete the override for ``scraped_name``.

    Raises:
        ConfigurationError: If no override exists for the name.
    """
    async with session.begin():
        result = await session.execute(
            sa.select(FRNManualOverride).where(FRNManualOverride.scraped_name == scraped_name)
        )
        override = result.scalar_one_or_none()
        if override is None:
            raise ConfigurationError(f"No manual override for {scraped_name!r}")
        details = {"frn": override.frn, "confidence_score": override.confidence_score}
        await session.delete(override)
        await session.flush()
        await rebuild_lookup_cache(session, normalization)
        session.add(
            AuditLog(action_type="override_remove", subject=scraped_name, operator=operator, details=details)
        )
