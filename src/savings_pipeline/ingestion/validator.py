"""Per-record validation and normalization of raw product listings.

``validate_product`` is a PURE function: it never touches the database
and never raises on bad data.  Every rule it evaluates produces one
``RuleCheck`` entry, so the ingestion audit can show exactly which rules
passed and which failed for each record.

Rule order:
    1. structure -- the record is a JSON object
    2. required -- bank name, AER and account type are present
    3. numeric -- numeric fields parse
    4. range / non_negative / deposit_order -- numeric bounds
    5. allowed_value -- account type is a known product type
    6. rate_threshold -- AER meets the per-account-type minimum
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from savings_pipeline.config.pipeline import IngestionConfig
from savings_pipeline.ingestion.json_loader import compute_record_id
from savings_pipeline.ingestion.normalization import (
    clean_bank_name,
    coerce_float,
    coerce_int,
    normalize_account_type,
    normalize_platform,
    parse_timestamp,
)

# Accepted spellings per canonical field, camelCase first (scraper output)
FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "natural_id": ("productId", "product_id", "id"),
    "bank_name": ("bankName", "bank_name", "bank"),
    "product_name": ("productName", "product_name", "name"),
    "platform": ("platform",),
    "account_type": ("accountType", "account_type"),
    "aer_rate": ("aerRate", "aer_rate", "aer"),
    "gross_rate": ("grossRate", "gross_rate"),
    "term_months": ("termMonths", "term_months"),
    "notice_period_days": ("noticePeriodDays", "notice_period_days"),
    "min_deposit": ("minDeposit", "min_deposit"),
    "max_deposit": ("maxDeposit", "max_deposit"),
    "fscs_protected": ("fscsProtected", "fscs_protected"),
    "interest_payment_frequency": ("interestPaymentFrequency", "interest_payment_frequency"),
    "apply_by_date": ("applyByDate", "apply_by_date"),
    "special_features": ("specialFeatures", "special_features"),
    "scrape_date": ("scrapeDate", "scrape_date", "scrapedAt"),
    "last_updated": ("lastUpdated", "last_updated", "scrapedAt", "scrapeDate"),
}

REQUIRED_FIELDS = ("bank_name", "aer_rate", "account_type")
FLOAT_FIELDS = ("aer_rate", "gross_rate", "min_deposit", "max_deposit")
INT_FIELDS = ("term_months", "notice_period_days")
COMPLETENESS_FIELDS = (
    "product_name",
    "platform",
    "gross_rate",
    "min_deposit",
    "max_deposit",
    "interest_payment_frequency",
    "scrape_date",
)


@dataclass
class RuleCheck:
    """Outcome of a single validation rule for one field."""

    field: str
    rule: str
    passed: bool
    message: str | None = None

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"field": self.field, "rule": self.rule, "passed": self.passed}
        if self.message is not None:
            data["message"] = self.message
        return data


@dataclass
class ValidationOutcome:
    """Validation result for one raw record.

    Attributes:
        natural_id: Record id, or a content hash when the record has none.
        valid: ``True`` iff every rule passed.
        product: Normalized product fields (``None`` for non-object records).
        validation_details: One ``RuleCheck`` per evaluated rule.
        normalization_applied: ``field -> {"original", "normalized"}`` for
            every field whose value changed during normalization.
        completeness: Share of optional descriptive fields present.
    """

    natural_id: str
    valid: bool = True
    product: dict | None = None
    validation_details: list[RuleCheck] = field(default_factory=list)
    normalization_applied: dict[str, dict] = field(default_factory=dict)
    completeness: float = 0.0

    @property
    def rejection_reasons(self) -> list[str]:
        return [
            f"{check.field}: {check.message or check.rule}"
            for check in self.validation_details
            if not check.passed
        ]

    def add_check(self, field_name: str, rule: str, passed: bool, message: str | None = None) -> None:
        self.validation_details.append(RuleCheck(field_name, rule, passed, message))
        if not passed:
            self.valid = False


def _pick(record: dict, canonical: str) -> Any:
    for key in FIELD_ALIASES[canonical]:
        if key in record and record[key] is not None:
            return record[key]
    return None


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _text(value: Any) -> str | None:
    if _is_blank(value):
        return None
    if isinstance(value, (list, tuple)):
        return ", ".join(str(item) for item in value)
    return str(value).strip()


def _min_rate_for(account_type: str, config: IngestionConfig) -> float:
    return {
        "easy_access": config.easy_access_min_rate,
        "notice": config.notice_min_rate,
        "fixed_term": config.fixed_term_min_rate,
    }.get(account_type, 0.0)


def _record_change(outcome: ValidationOutcome, name: str, original: Any, normalized: Any) -> None:
    if original != normalized:
        outcome.normalization_applied[name] = {"original": original, "normalized": normalized}


def natural_id_for(record: Any, record_index: int) -> str:
    """Return the record's own id or a stable content hash."""
    if isinstance(record, dict):
        explicit = _pick(record, "natural_id")
        if not _is_blank(explicit):
            return str(explicit).strip()
        return compute_record_id(record)
    return f"record-{record_index}"


def validate_product(
    record: Any,
    source: str,
    config: IngestionConfig,
    record_index: int = 0,
) -> ValidationOutcome:
    """Validate and normalize one raw product record.  PURE FUNCTION.

    Args:
        record: The raw JSON value from the ``products`` array.
        source: Partition source, used as platform fallback.
        config: Ingestion bounds and normalization maps.
        record_index: Position in the input array.

    Returns:
        A ``ValidationOutcome``; ``product`` is populated whenever the
        record is a JSON object, even if it is invalid.
    """
    outcome = ValidationOutcome(natural_id=natural_id_for(record, record_index))

    # 1. Structure
    if not isinstance(record, dict):
        outcome.add_check("record", "structure", False, f"expected JSON object, got {type(record).__name__}")
        return outcome
    outcome.add_check("record", "structure", True)

    # 2. Required fields
    for name in REQUIRED_FIELDS:
        present = not _is_blank(_pick(record, name))
        outcome.add_check(name, "required", present, None if present else "missing required field")

    # 3. Numeric parsing
    numbers: dict[str, float | int | None] = {}
    for name in FLOAT_FIELDS + INT_FIELDS:
        raw_value = _pick(record, name)
        try:
            numbers[name] = coerce_float(raw_value) if name in FLOAT_FIELDS else coerce_int(raw_value)
        except ValueError as e:
            numbers[name] = None
            outcome.add_check(name, "numeric", False, f"not numeric: {e}")
            continue
        if raw_value is not None:
            outcome.add_check(name, "numeric", True)
            _record_change(outcome, name, raw_value, numbers[name])

    # 4. Bounds
    aer = numbers["aer_rate"]
    if aer is not None:
        in_range = config.aer_min <= aer <= config.aer_max
        outcome.add_check(
            "aer_rate",
            "range",
            in_range,
            None if in_range else f"AER {aer} outside {config.aer_min}-{config.aer_max}",
        )
    gross = numbers["gross_rate"]
    if gross is not None:
        in_range = config.aer_min <= gross <= config.aer_max
        outcome.add_check(
            "gross_rate",
            "range",
            in_range,
            None if in_range else f"gross rate {gross} outside {config.aer_min}-{config.aer_max}",
        )
    for name in ("min_deposit", "max_deposit"):
        value = numbers[name]
        if value is not None:
            ok = value >= 0
            outcome.add_check(name, "non_negative", ok, None if ok else f"{name} {value} is negative")
    if numbers["min_deposit"] is not None and numbers["max_deposit"] is not None:
        ok = numbers["min_deposit"] <= numbers["max_deposit"]
        outcome.add_check("max_deposit", "deposit_order", ok, None if ok else "min_deposit exceeds max_deposit")
    for name, upper in (("term_months", config.max_term_months), ("notice_period_days", config.max_notice_days)):
        value = numbers[name]
        if value is not None:
            ok = 0 <= value <= upper
            outcome.add_check(name, "range", ok, None if ok else f"{name} {value} outside 0-{upper}")

    # Normalize descriptive fields
    raw_bank = _pick(record, "bank_name")
    bank_name = clean_bank_name(str(raw_bank)) if not _is_blank(raw_bank) else None
    if bank_name is not None:
        _record_change(outcome, "bank_name", raw_bank, bank_name)

    raw_account_type = _pick(record, "account_type")
    account_type = None
    if not _is_blank(raw_account_type):
        account_type = normalize_account_type(str(raw_account_type), config.account_type_aliases)
        _record_change(outcome, "account_type", raw_account_type, account_type)

        # 5. Allowed account types
        allowed = account_type in config.allowed_account_types
        outcome.add_check(
            "account_type",
            "allowed_value",
            allowed,
            None if allowed else f"unknown account type {raw_account_type!r}",
        )

        # 6. Minimum rate per account type
        if config.enable_rate_filtering and allowed and aer is not None:
            minimum = _min_rate_for(account_type, config)
            ok = aer >= minimum
            outcome.add_check(
                "aer_rate",
                "rate_threshold",
                ok,
                None if ok else f"rate {aer} below {minimum} threshold for {account_type}",
            )

    raw_platform = _pick(record, "platform")
    platform_source = raw_platform if not _is_blank(raw_platform) else source
    platform = normalize_platform(str(platform_source), config.platform_aliases)
    _record_change(outcome, "platform", raw_platform, platform)

    fscs_raw = _pick(record, "fscs_protected")
    last_updated: datetime | None = parse_timestamp(_pick(record, "last_updated"))

    outcome.product = {
        "natural_id": outcome.natural_id,
        "bank_name": bank_name,
        "product_name": _text(_pick(record, "product_name")),
        "platform": platform,
        "raw_platform": raw_platform,
        "account_type": account_type,
        "aer_rate": aer,
        "gross_rate": gross if gross is not None else aer,
        "term_months": numbers["term_months"],
        "notice_period_days": numbers["notice_period_days"],
        "min_deposit": numbers["min_deposit"],
        "max_deposit": numbers["max_deposit"],
        "fscs_protected": bool(fscs_raw) if fscs_raw is not None else True,
        "interest_payment_frequency": _text(_pick(record, "interest_payment_frequency")),
        "apply_by_date": _text(_pick(record, "apply_by_date")),
        "special_features": _text(_pick(record, "special_features")),
        "scrape_date": _text(_pick(record, "scrape_date")),
        "last_updated": last_updated,
        "raw_payload": record,
    }

    present = sum(1 for name in COMPLETENESS_FIELDS if not _is_blank(_pick(record, name)))
    outcome.completeness = round(present / len(COMPLETENESS_FIELDS), 4)
    return outcome


def source_reliability(source: str, config: IngestionConfig) -> float:
    return config.source_reliability.get(source.lower(), config.default_source_reliability)
