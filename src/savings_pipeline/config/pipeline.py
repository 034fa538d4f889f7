"""Pipeline configuration with sensible defaults.

Defaults can be overridden in ``config/pipeline.yaml`` and, at runtime, by
category-scoped key/value rows in the ``config_settings`` table.  Stages
never read configuration from global state: a ``PipelineConfig`` is
passed into each of them explicitly.
"""

from __future__ import annotations

import enum
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, Literal

import structlog
import yaml
from pydantic import BaseModel, ValidationError, model_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from savings_pipeline.errors import ConfigurationError
from savings_pipeline.models.config_settings import ConfigSetting

logger = structlog.get_logger()


class SelectionPolicy(str, enum.Enum):
    """Separation policies that may run before plain quality ranking."""

    FSCS_BANK_SEPARATION = "fscs_bank_separation"
    PLATFORM_SEPARATION = "platform_separation"


class IngestionConfig(BaseModel):
    """Validation bounds and normalization maps for raw listings."""

    aer_min: float = 0.0
    aer_max: float = 20.0
    max_term_months: int = 120
    max_notice_days: int = 730

    enable_rate_filtering: bool = True
    easy_access_min_rate: float = 0.0
    notice_min_rate: float = 0.0
    fixed_term_min_rate: float = 0.0

    data_corruption_threshold: float = 0.5

    allowed_account_types: list[str] = ["easy_access", "notice", "fixed_term"]
    account_type_aliases: dict[str, str] = {
        "instant_access": "easy_access",
        "instant access": "easy_access",
        "easy access": "easy_access",
        "easy-access": "easy_access",
        "notice account": "notice",
        "notice_account": "notice",
        "fixed term": "fixed_term",
        "fixed-term": "fixed_term",
        "fixed": "fixed_term",
        "bond": "fixed_term",
        "fixed_rate_bond": "fixed_term",
        "fixed rate bond": "fixed_term",
    }
    platform_aliases: dict[str, str] = {
        "moneyfacts": "direct",
        "bank_website": "direct",
        "raisin uk": "raisin",
        "hl": "hl active savings",
        "hargreaves lansdown": "hl active savings",
        "aj bell": "ajbell",
    }
    source_reliability: dict[str, float] = {
        "ajbell": 0.95,
        "flagstone": 0.90,
        "hl": 0.90,
        "moneyfacts": 0.85,
    }
    default_source_reliability: float = 0.70


class NormalizationConfig(BaseModel):
    """Institution name normalization shared by FRN lookup and business keys."""

    prefixes: list[str] = ["THE"]
    suffixes: list[str] = ["LIMITED", "LTD", "PLC", "BUILDING SOCIETY", "BANK", "UK"]
    abbreviations: dict[str, str] = {
        "&": "AND",
        "BS": "BUILDING SOCIETY",
        "B/S": "BUILDING SOCIETY",
        "INTL": "INTERNATIONAL",
    }


class FRNMatchingConfig(BaseModel):
    """Thresholds and switches for institution resolution."""

    enabled: bool = True
    enable_alias: bool = True
    enable_fuzzy: bool = True
    enable_research_queue: bool = True

    fuzzy_threshold: float = 0.80
    exact_match_confidence: float = 1.0
    alias_match_confidence: float = 0.95
    fuzzy_match_confidence: float = 0.90
    auto_assign_threshold: float = 0.85
    max_candidates: int = 5

    research_queue_max_size: int = 1000
    generic_names: list[str] = ["BANK", "UNKNOWN", "BUILDING SOCIETY", "SAVINGS"]

    normalization: NormalizationConfig = NormalizationConfig()

    @model_validator(mode="after")
    def check_thresholds(self) -> "FRNMatchingConfig":
        """Reject thresholds outside [0, 1]."""
        for name in ("fuzzy_threshold", "auto_assign_threshold", "fuzzy_match_confidence"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be between 0 and 1, got {value}")
        return self


class QualityWeights(BaseModel):
    """Relative weights of the quality-score factors."""

    rate: float = 0.35
    platform: float = 0.15
    completeness: float = 0.10
    reliability: float = 0.10
    balance_fit: float = 0.15
    freshness: float = 0.15

    @model_validator(mode="after")
    def warn_if_weights_dont_sum(self) -> "QualityWeights":
        """Log a warning if weights do not sum to approximately 1.0."""
        total = self.rate + self.platform + self.completeness + self.reliability + self.balance_fit + self.freshness
        if abs(total - 1.0) > 0.01:
            structlog.get_logger().warning(
                "quality_weights_sum_mismatch",
                total=round(total, 4),
                expected=1.0,
            )
        return self


class DeduplicationConfig(BaseModel):
    """Business key, scoring and selection settings."""

    business_key_fields: list[str] = [
        "bank_name",
        "account_type",
        "term_months",
        "notice_period_days",
        "aer_rate",
    ]
    weights: QualityWeights = QualityWeights()
    frn_quality_bonus: float = 0.05
    quality_score_max: float = 1.0
    max_rate_for_scoring: float = 10.0
    neutral_score: float = 0.5
    completeness_fields: list[str] = [
        "gross_rate",
        "min_deposit",
        "max_deposit",
        "interest_payment_frequency",
        "product_name",
        "frn",
    ]
    platform_reliability: dict[str, float] = {
        "direct": 0.95,
        "flagstone": 0.90,
        "raisin": 0.90,
        "hl active savings": 0.85,
        "ajbell": 0.85,
    }
    default_platform_reliability: float = 0.70
    target_balance: float = 25000.0
    freshness_horizon_days: int = 30

    preferred_platforms: dict[str, float] = {}
    platform_separation_enabled: bool = True
    platform_separation_key: Literal["platform", "category"] = "platform"
    direct_platforms: list[str] = ["direct", "bank_website"]

    fscs_validation_enabled: bool = True
    fscs_limit: float = 85000.0
    policy_order: list[SelectionPolicy] = [
        SelectionPolicy.FSCS_BANK_SEPARATION,
        SelectionPolicy.PLATFORM_SEPARATION,
    ]

    @model_validator(mode="after")
    def check_policy_order(self) -> "DeduplicationConfig":
        """Each policy may appear at most once in ``policy_order``."""
        if len(set(self.policy_order)) != len(self.policy_order):
            raise ValueError("policy_order contains duplicate policies")
        if self.quality_score_max > 1.0:
            raise ValueError("quality_score_max must not exceed 1.0")
        return self


class AuditConfig(BaseModel):
    """Audit trail validation settings."""

    timing_tolerance_ms: float = 100.0
    high_confidence_threshold: float = 0.9


class OrchestrationConfig(BaseModel):
    """Batch coordination switches."""

    concurrent_execution_check: bool = True
    # A running batch older than this is treated as abandoned; 0 disables
    stale_batch_minutes: int = 240


class PipelineConfig(BaseModel):
    """Top-level pipeline configuration combining all sub-configs."""

    ingestion: IngestionConfig = IngestionConfig()
    frn_matching: FRNMatchingConfig = FRNMatchingConfig()
    deduplication: DeduplicationConfig = DeduplicationConfig()
    audit: AuditConfig = AuditConfig()
    orchestration: OrchestrationConfig = OrchestrationConfig()


CONFIG_CATEGORIES = tuple(PipelineConfig.model_fields)


def load_pipeline_config(path: Path) -> PipelineConfig:
    """Load pipeline configuration from a YAML file.

    If the file does not exist, returns a ``PipelineConfig`` with all
    default values.  Partial overrides are supported -- only the keys
    present in the YAML file will override defaults.
    """
    if not path.exists():
        return PipelineConfig()

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    try:
        return PipelineConfig(**data)
    except ValidationError as e:
        raise ConfigurationError(f"invalid pipeline config {path}: {e}") from e


def apply_overrides(base: PipelineConfig, overrides: dict[str, dict[str, Any]]) -> PipelineConfig:
    """Merge category-scoped key/value overrides into ``base``.

    Unknown categories and keys are logged and ignored.
    """
    data = base.model_dump()
    for category, values in overrides.items():
        if category not in CONFIG_CATEGORIES:
            logger.warning("config_unknown_category", category=category)
            continue
        known = data[category]
        for key, value in values.items():
            if key not in known:
                logger.warning("config_unknown_key", category=category, key=key)
                continue
            if isinstance(known[key], dict) and isinstance(value, dict):
                known[key] = {**known[key], **value}
            else:
                known[key] = value
    try:
        return PipelineConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"invalid config override: {e}") from e


async def load_config_overrides(session: AsyncSession) -> dict[str, dict[str, Any]]:
    """Read all ``config_settings`` rows grouped by category."""
    result = await session.execute(select(ConfigSetting).order_by(ConfigSetting.id))
    overrides: dict[str, dict[str, Any]] = {}
    for row in result.scalars():
        overrides.setdefault(row.category, {})[row.config_key] = row.config_value
    return overrides


class ConfigProvider:
    """Caches the merged YAML + database configuration for a fixed TTL.

    ``invalidate()`` drops the cached value so the next ``get()`` reloads it;
    ``set_value()`` writes an override row and invalidates.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        yaml_path: Path | None = None,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.session_factory = session_factory
        self.yaml_path = yaml_path
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cached: PipelineConfig | None = None
        self._loaded_at = 0.0

    async def get(self) -> PipelineConfig:
        if self._cached is not None and self._clock() - self._loaded_at < self.ttl_seconds:
            return self._cached

        base = load_pipeline_config(self.yaml_path) if self.yaml_path else PipelineConfig()
        async with self.session_factory() as session:
            overrides = await load_config_overrides(session)
        self._cached = apply_overrides(base, overrides)
        self._loaded_at = self._clock()
        logger.debug("pipeline_config_loaded", override_categories=sorted(overrides))
        return self._cached

    def invalidate(self) -> None:
        self._cached = None

    async def set_value(self, category: str, key: str, value: Any, updated_by: str = "system") -> None:
        """Insert or update one override row, then invalidate the cache."""
        if category not in CONFIG_CATEGORIES:
            raise ConfigurationError(f"unknown config category: {category}")

        async with self.session_factory() as session, session.begin():
            result = await session.execute(
                select(ConfigSetting).where(
                    ConfigSetting.category == category,
                    ConfigSetting.config_key == key,
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                session.add(
                    ConfigSetting(
                        category=category,
                        config_key=key,
                        config_value=value,
                        updated_by=updated_by,
                    )
                )
            else:
                row.config_value = value
                row.updated_by = updated_by
        self.invalidate()
