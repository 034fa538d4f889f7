"""Tests for FRN reference data loading, overrides and the lookup cache."""

from pathlib import Path

import pytest
from sqlalchemy import select

from savings_pipeline.errors import ConfigurationError, SourceFileError
from savings_pipeline.frn.index import load_frn_index
from savings_pipeline.frn.reference import (
    ManualOverrideEntry,
    add_manual_override,
    load_reference_data,
    load_reference_file,
    remove_manual_override,
)
from savings_pipeline.models.audit_log import AuditLog
from savings_pipeline.models.frn_lookup_cache import FRNLookupCache


async def _cache_rows(session_factory) -> list[FRNLookupCache]:
    async with session_factory() as session:
        result = await session.execute(select(FRNLookupCache).order_by(FRNLookupCache.priority_rank))
        return list(result.scalars().all())


async def test_load_builds_lookup_cache(test_session_factory, seeded_reference):
    """Institutions, brands and overrides each produce cache rows."""
    assert seeded_reference == {
        "institutions": 4,
        "shared_brands": 1,
        "manual_overrides": 1,
        "cache_rows": 6,
    }
    rows = await _cache_rows(test_session_factory)
    by_name = {row.search_name: row for row in rows}

    assert by_name["CHASE"].match_type == "manual_override"
    assert by_name["CHASE"].priority_rank == 1
    assert by_name["SANTANDER"].match_type == "direct_match"
    assert by_name["SANTANDER"].confidence_score == 1.0
    assert by_name["FIRST DIRECT"].match_type == "shared_brand"
    assert by_name["FIRST DIRECT"].frn == "765112"
    # "Santander" and "Nationwide BS" normalize onto the firm names
    assert len([row for row in rows if row.frn == "106054"]) == 1


async def test_reload_is_idempotent(test_session_factory, seeded_reference, reference_data, pipeline_config):
    async with test_session_factory() as session:
        summary = await load_reference_data(session, reference_data, pipeline_config.frn_matching.normalization)
    assert summary["cache_rows"] == seeded_reference["cache_rows"]


async def test_load_writes_audit_log(test_session_factory, seeded_reference):
    async with test_session_factory() as session:
        result = await session.execute(select(AuditLog))
        entries = result.scalars().all()
    assert [entry.action_type for entry in entries] == ["reference_load"]
    assert entries[0].details["cache_rows"] == 6


async def test_add_and_remove_override(test_session_factory, seeded_reference, pipeline_config):
    """Override changes are audited and visible in the index immediately."""
    normalization = pipeline_config.frn_matching.normalization
    entry = ManualOverrideEntry(scraped_name="Santander Online", frn="106054", confidence_score=0.9)

    async with test_session_factory() as session:
        cache_rows = await add_manual_override(session, entry, normalization, operator="analyst")
    assert cache_rows == 7

    async with test_session_factory() as session:
        index = await load_frn_index(session)
    hit = index.lookup_exact("SANTANDER ONLINE")
    assert hit is not None
    assert hit.match_type == "manual_override"
    assert hit.confidence == 0.9

    async with test_session_factory() as session:
        await remove_manual_override(session, "Santander Online", normalization, operator="analyst")
    async with test_session_factory() as session:
        index = await load_frn_index(session)
        result = await session.execute(select(AuditLog.action_type, AuditLog.operator).order_by(AuditLog.id))
        actions = result.all()
    assert index.lookup_exact("SANTANDER ONLINE") is None
    assert actions[-2:] == [("override_add", "analyst"), ("override_remove", "analyst")]


async def test_remove_missing_override_raises(test_session_factory, seeded_reference, pipeline_config):
    async with test_session_factory() as session:
        with pytest.raises(ConfigurationError, match="No manual override"):
            await remove_manual_override(session, "Nobody", pipeline_config.frn_matching.normalization)


def test_invalid_override_confidence():
    with pytest.raises(ValueError):
        ManualOverrideEntry(scraped_name="Chase", frn="124579", confidence_score=0.0)


def test_load_reference_file(tmp_path: Path):
    path = tmp_path / "frn.yaml"
    path.write_text(
        "institutions:\n"
        "  - frn: '106054'\n"
        "    firm_name: Santander UK plc\n"
        "    name_variations: [Santander]\n"
        "shared_brands:\n"
        "  - primary_frn: '765112'\n"
        "    trading_name: First Direct\n",
        encoding="utf-8",
    )
    data = load_reference_file(path)
    assert data.institutions[0].name_variations == ["Santander"]
    assert data.shared_brands[0].trading_name == "First Direct"
    assert data.manual_overrides == []


def test_load_reference_file_rejects_bad_frn(tmp_path: Path):
    path = tmp_path / "bad.yaml"
    path.write_text("institutions:\n  - frn: 'ABC'\n    firm_name: Nobody\n", encoding="utf-8")
    with pytest.raises(SourceFileError, match="Invalid reference data"):
        load_reference_file(path)
