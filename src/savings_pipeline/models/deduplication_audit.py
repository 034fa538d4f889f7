"""Per-batch deduplication summary."""

from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from savings_pipeline.models.base import Base


class DeduplicationAudit(Base):
    __tablename__ = "deduplication_audit"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[str] = mapped_column(sa.String, unique=True)

    input_products_count: Mapped[int] = mapped_column(sa.Integer)
    unique_business_keys: Mapped[int] = mapped_column(sa.Integer)
    duplicate_groups_identified: Mapped[int] = mapped_column(sa.Integer)
    business_key_fields: Mapped[list] = mapped_column(sa.JSON)
    quality_algorithm: Mapped[str] = mapped_column(sa.String)
    quality_score_distribution: Mapped[dict] = mapped_column(sa.JSON)
    products_selected: Mapped[int] = mapped_column(sa.Integer)
    products_rejected: Mapped[int] = mapped_column(sa.Integer)
    selection_criteria: Mapped[dict] = mapped_column(sa.JSON)

    fscs_validation_performed: Mapped[bool] = mapped_column(sa.Boolean)
    banks_preserved: Mapped[int] = mapped_column(sa.Integer)
    platforms_preserved: Mapped[int] = mapped_column(sa.Integer)
    direct_platform_products: Mapped[int] = mapped_column(sa.Integer)
    fscs_compliance_status: Mapped[str] = mapped_column(sa.String)  # "compliant", "violations_flagged"
    fscs_violations: Mapped[list] = mapped_column(sa.JSON)

    # Component timings must add up to processing_time_ms
    processing_time_ms: Mapped[float] = mapped_column(sa.Float)
    business_key_generation_time_ms: Mapped[float] = mapped_column(sa.Float)
    quality_scoring_time_ms: Mapped[float] = mapped_column(sa.Float)
    selection_time_ms: Mapped[float] = mapped_column(sa.Float)

    created_at: Mapped[datetime] = mapped_column(sa.DateTime, server_default=sa.text("CURRENT_TIMESTAMP"))
