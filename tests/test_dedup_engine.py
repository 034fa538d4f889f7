"""Tests for the deduplication engine."""

import random
from datetime import datetime

import pytest

from savings_pipeline.config.pipeline import DeduplicationConfig, NormalizationConfig
from savings_pipeline.dedup.engine import run_deduplication
from savings_pipeline.dedup.policies import SelectionReason
from savings_pipeline.errors import ConfigurationError

NOW = datetime(2026, 10, 18, 12, 0, 0)


def _make_product(product_id: str, bank_name: str = "Santander UK plc", frn: str | None = "106054", **overrides) -> dict:
    product = {
        "product_id": product_id,
        "source": product_id.split("/")[0],
        "bank_name": bank_name,
        "platform": "direct",
        "account_type": "easy_access",
        "aer_rate": 4.5,
        "term_months": None,
        "notice_period_days": None,
        "frn": frn,
        "confidence_score": 1.0 if frn else 0.0,
        "last_updated": NOW,
    }
    product.update(overrides)
    return product


def _run(products: list[dict], config: DeduplicationConfig | None = None):
    return run_deduplication(products, config or DeduplicationConfig(), NormalizationConfig(), now=NOW)


def test_duplicate_listings_collapse():
    """Two listings of one Santander product yield a single survivor."""
    products = [
        _make_product("moneyfacts/easy_access/a", gross_rate=4.4),
        _make_product("ajbell/easy_access/b", bank_name="SANTANDER UK PLC"),
        _make_product("moneyfacts/easy_access/c", bank_name="Barclays", frn="122702", aer_rate=4.1),
    ]
    result = _run(products)

    assert result.input_count == 3
    assert result.unique_business_keys == 2
    assert result.duplicate_groups == 1
    assert [s.survivor.product_id for s in result.selections] == [
        "moneyfacts/easy_access/c",
        "moneyfacts/easy_access/a",
    ]
    santander = result.selections[1]
    assert santander.reason == SelectionReason.QUALITY_RANKED
    assert [r.member.product_id for r in santander.rejections] == ["ajbell/easy_access/b"]
    assert result.rejected_count == 1
    assert result.fscs_compliance_status == "compliant"
    assert result.banks_preserved == 2
    assert result.direct_platform_products == 2
    assert result.quality_distribution["count"] == 3


def test_every_product_covered_once():
    products = [
        _make_product(f"moneyfacts/easy_access/{i}", platform=platform, aer_rate=rate)
        for i, (platform, rate) in enumerate(
            [("direct", 4.5), ("raisin", 4.5), ("raisin", 4.5), ("direct", 4.2), ("flagstone", 4.5)]
        )
    ]
    result = _run(products)

    covered = [m.product_id for s in result.selections for m in s.members]
    assert sorted(covered) == sorted(p["product_id"] for p in products)
    assert len(result.selections) + result.rejected_count == len(products)


def test_deterministic_regardless_of_input_order():
    products = [
        _make_product(f"src{i}/easy_access/p{i}", platform=["direct", "raisin"][i % 2]) for i in range(6)
    ]
    expected = [(s.business_key, s.survivor.product_id) for s in _run(products).selections]

    shuffled = list(products)
    random.Random(7).shuffle(shuffled)
    assert [(s.business_key, s.survivor.product_id) for s in _run(shuffled).selections] == expected


def test_unscorable_product_is_kept_and_flagged():
    products = [_make_product("moneyfacts/easy_access/a", aer_rate="n/a")]
    result = _run(products)

    assert result.key_generation_errors == 1
    assert result.scoring_errors == 1
    (selection,) = result.selections
    assert selection.business_key == "unkeyed|moneyfacts/easy_access/a"
    assert selection.survivor.quality is None
    assert result.fscs_compliance_status == "violations_flagged"
    assert result.quality_distribution["count"] == 0


def test_unknown_business_key_field():
    with pytest.raises(ConfigurationError):
        _run([_make_product("a/b/c")], DeduplicationConfig(business_key_fields=["bank_name", "colour"]))


def test_empty_input():
    result = _run([])

    assert result.selections == []
    assert result.unique_business_keys == 0
    assert result.quality_distribution == {"mean": 0.0, "median": 0.0, "min": 0.0, "max": 0.0, "count": 0}


def test_unmatched_products_grouped_by_bank_name():
    """Without an FRN the normalized bank name is the institution."""
    products = [
        _make_product("moneyfacts/easy_access/a", bank_name="Unknown Mutual", frn=None),
        _make_product("ajbell/easy_access/b", bank_name="Unknown Mutual Ltd", frn=None),
    ]
    result = _run(products)

    (selection,) = result.selections
    assert selection.survivor.institution == "UNKNOWN MUTUAL"
    assert len(selection.rejections) == 1


def test_fscs_not_checked_when_disabled():
    result = _run([_make_product("a/b/c")], DeduplicationConfig(fscs_validation_enabled=False))
    assert result.fscs_compliance_status == "not_checked"


def test_timings_and_criteria():
    result = _run([_make_product("a/b/c")])

    timings = result.timings
    assert timings.total_ms == pytest.approx(
        timings.business_key_ms + timings.quality_scoring_ms + timings.selection_ms, abs=0.001
    )
    assert result.selection_criteria["tie_breakers"] == ["quality_score desc", "last_updated desc", "product_id asc"]
    assert result.selection_criteria["policy_order"] == ["fscs_bank_separation", "platform_separation"]


def test_santander_duplicates_with_large_deposits_are_quality_ranked():
    """Spelling variants of one bank on one platform collapse without an FSCS flag."""
    products = [
        _make_product("moneyfacts/easy_access/mf-1", max_deposit=1_000_000),
        _make_product("moneyfacts/easy_access/mf-2", bank_name="Santander UK Plc ", max_deposit=1_000_000),
    ]
    result = _run(products)

    (selection,) = result.selections
    assert selection.reason == SelectionReason.QUALITY_RANKED
    assert len(selection.members) == 2
    assert result.fscs_violations == []
    assert result.fscs_compliance_status == "compliant"
