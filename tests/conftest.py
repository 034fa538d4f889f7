"""Shared test fixtures."""

import json
from collections.abc import Callable
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from savings_pipeline.config.pipeline import PipelineConfig
from savings_pipeline.frn.reference import (
    InstitutionEntry,
    ManualOverrideEntry,
    ReferenceData,
    SharedBrandEntry,
    load_reference_data,
)
from savings_pipeline.models.base import Base

SANTANDER_FRN = "106054"
BARCLAYS_FRN = "122702"
NATIONWIDE_FRN = "106078"
HSBC_FRN = "765112"
CHASE_FRN = "124579"


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    """Default pipeline configuration."""
    return PipelineConfig()


@pytest.fixture
def reference_data() -> ReferenceData:
    """A small FRN register: institutions, a shared brand and an override."""
    return ReferenceData(
        institutions=[
            InstitutionEntry(frn=SANTANDER_FRN, firm_name="Santander UK plc", name_variations=["Santander"]),
            InstitutionEntry(frn=BARCLAYS_FRN, firm_name="Barclays Bank UK PLC"),
            InstitutionEntry(
                frn=NATIONWIDE_FRN,
                firm_name="Nationwide Building Society",
                name_variations=["Nationwide BS"],
            ),
            InstitutionEntry(frn=HSBC_FRN, firm_name="HSBC UK Bank plc"),
        ],
        shared_brands=[
            SharedBrandEntry(primary_frn=HSBC_FRN, trading_name="First Direct"),
        ],
        manual_overrides=[
            ManualOverrideEntry(scraped_name="Chase", frn=CHASE_FRN, firm_name="J.P. Morgan Europe Limited"),
        ],
    )


@pytest.fixture
async def test_engine():
    """Create an async SQLite in-memory engine for tests."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def test_session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory bound to the test engine."""
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture
async def seeded_reference(test_session_factory, reference_data, pipeline_config) -> dict:
    """Load the reference register and build the lookup cache."""
    async with test_session_factory() as session:
        return await load_reference_data(session, reference_data, pipeline_config.frn_matching.normalization)


@pytest.fixture
def tmp_dead_letter_dir(tmp_path: Path) -> Path:
    """Return a temporary dead letter directory."""
    dead_letter = tmp_path / "dead_letters"
    dead_letter.mkdir()
    return dead_letter


@pytest.fixture
def write_product_file(tmp_path: Path) -> Callable[..., Path]:
    """Return a helper that writes a ``{"metadata", "products"}`` JSON file."""

    def _write(source: str, method: str, products: list, filename: str | None = None) -> Path:
        path = tmp_path / (filename or f"{source}_{method}.json")
        data = {
            "metadata": {"source": source, "method": method, "scrapedAt": "2026-10-18T09:00:00Z"},
            "products": products,
        }
        path.write_text(json.dumps(data), encoding="utf-8")
        return path

    return _write
