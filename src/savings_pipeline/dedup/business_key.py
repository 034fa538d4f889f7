"""Business keys: the fingerprint that identifies "the same product".

A key is the configured fields rendered in configured order and joined
with ``|``.  Bank names go through the same institution normalization as
FRN matching, so casing, whitespace and legal suffixes never split a
group.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from savings_pipeline.config.pipeline import NormalizationConfig
from savings_pipeline.errors import ConfigurationError
from savings_pipeline.frn.normalizer import normalize_name


def _number(value: Any, fmt: str) -> str:
    if value is None:
        return "none"
    return fmt.format(float(value))


def _render_bank(product: dict, normalization: NormalizationConfig) -> str:
    return normalize_name(product.get("bank_name") or "", normalization)


FIELD_RENDERERS: dict[str, Callable[[dict, NormalizationConfig], str]] = {
    "bank_name": _render_bank,
    "account_type": lambda p, _: (p.get("account_type") or "none").strip().lower(),
    "term_months": lambda p, _: f"term_{p['term_months']}" if p.get("term_months") is not None else "term_none",
    "notice_period_days": lambda p, _: (
        f"notice_{p['notice_period_days']}" if p.get("notice_period_days") is not None else "notice_none"
    ),
    "aer_rate": lambda p, _: "rate_" + _number(p.get("aer_rate"), "{:.2f}"),
    "min_deposit": lambda p, _: f"min_{int(p['min_deposit'])}" if p.get("min_deposit") is not None else "min_none",
    "frn": lambda p, _: p.get("frn") or "nofrn",
    "platform": lambda p, _: (p.get("platform") or "none").strip().lower(),
}


def check_key_fields(fields: list[str]) -> None:
    """Raise ``ConfigurationError`` for fields without a renderer."""
    unknown = [name for name in fields if name not in FIELD_RENDERERS]
    if unknown:
        raise ConfigurationError(
            f"unsupported business key fields {unknown}; supported: {sorted(FIELD_RENDERERS)}"
        )
    if not fields:
        raise ConfigurationError("business_key_fields must not be empty")


def generate_business_key(product: dict, fields: list[str], normalization: NormalizationConfig) -> str:
    """Render ``product`` into its business key.

    >>> generate_business_key(
    ...     {"bank_name": "Santander UK plc", "account_type": "easy_access", "aer_rate": 4.5},
    ...     ["bank_name", "account_type", "aer_rate"],
    ...     NormalizationConfig(),
    ... )
    'SANTANDER|easy_access|rate_4.50'

    Raises:
        ConfigurationError: If a field has no renderer.
        ValueError: If a numeric field cannot be rendered.
    """
    check_key_fields(fields)
    return "|".join(FIELD_RENDERERS[name](product, normalization) for name in fields)
