"""Tests for business key generation."""

import pytest

from savings_pipeline.config.pipeline import NormalizationConfig
from savings_pipeline.dedup.business_key import check_key_fields, generate_business_key
from savings_pipeline.errors import ConfigurationError

FIELDS = ["bank_name", "account_type", "term_months", "notice_period_days", "aer_rate"]


def _key(product: dict, fields: list[str] = FIELDS) -> str:
    return generate_business_key(product, fields, NormalizationConfig())


def test_default_key_shape():
    product = {"bank_name": "Santander UK plc", "account_type": "easy_access", "aer_rate": 4.5}
    assert _key(product) == "SANTANDER|easy_access|term_none|notice_none|rate_4.50"


def test_bank_name_variants_share_a_key():
    """Casing, spacing and legal suffixes never split a group."""
    base = {"account_type": "easy_access", "aer_rate": 4.5}
    keys = {
        _key({**base, "bank_name": name})
        for name in ["Santander UK plc", "SANTANDER UK PLC", "santander", "Santander UK Limited"]
    }
    assert len(keys) == 1


def test_rate_rendered_to_two_places():
    assert _key({"aer_rate": 4.5}, ["aer_rate"]) == _key({"aer_rate": 4.500001}, ["aer_rate"])
    assert _key({"aer_rate": 4.5}, ["aer_rate"]) != _key({"aer_rate": 4.51}, ["aer_rate"])


def test_term_and_notice_fields():
    product = {"term_months": 12, "notice_period_days": 95}
    assert _key(product, ["term_months", "notice_period_days"]) == "term_12|notice_95"


def test_field_order_is_respected():
    product = {"bank_name": "Barclays", "account_type": "notice"}
    assert _key(product, ["account_type", "bank_name"]) == "notice|BARCLAYS"


def test_frn_and_platform_fields():
    product = {"frn": "106054", "platform": "Raisin"}
    assert _key(product, ["frn", "platform"]) == "106054|raisin"
    assert _key({}, ["frn"]) == "nofrn"


def test_non_numeric_rate_raises():
    with pytest.raises(ValueError):
        _key({"aer_rate": "high"}, ["aer_rate"])


@pytest.mark.parametrize("fields", [["bank_name", "colour"], []])
def test_unsupported_fields_rejected(fields):
    with pytest.raises(ConfigurationError):
        check_key_fields(fields)
