"""Accumulated raw product listings, partitioned by (source, method)."""

from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from savings_pipeline.models.base import Base


class ProductRaw(Base):
    __tablename__ = "products_raw"
    __table_args__ = (
        sa.UniqueConstraint("source", "method", "natural_id", name="uq_products_raw_partition_natural_id"),
        sa.CheckConstraint(
            "confidence_score >= 0 AND confidence_score <= 1", name="ck_products_raw_confidence_range"
        ),
        sa.Index("ix_products_raw_partition", "source", "method"),
    )

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)

    # Identity: "{source}/{method}/{natural_id}" is stable across re-ingestion
    product_id: Mapped[str] = mapped_column(sa.String, unique=True)
    source: Mapped[str] = mapped_column(sa.String)
    method: Mapped[str] = mapped_column(sa.String)
    natural_id: Mapped[str] = mapped_column(sa.String)
    batch_id: Mapped[str] = mapped_column(sa.String, index=True)

    # Descriptive attributes (normalized)
    bank_name: Mapped[str] = mapped_column(sa.String)
    product_name: Mapped[str | None] = mapped_column(sa.String, nullable=True)
    platform: Mapped[str] = mapped_column(sa.String)
    raw_platform: Mapped[str | None] = mapped_column(sa.String, nullable=True)
    account_type: Mapped[str] = mapped_column(sa.String)
    aer_rate: Mapped[float] = mapped_column(sa.Float)
    gross_rate: Mapped[float | None] = mapped_column(sa.Float, nullable=True)
    term_months: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
    notice_period_days: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
    min_deposit: Mapped[float | None] = mapped_column(sa.Float, nullable=True)
    max_deposit: Mapped[float | None] = mapped_column(sa.Float, nullable=True)
    fscs_protected: Mapped[bool] = mapped_column(sa.Boolean, default=True)
    interest_payment_frequency: Mapped[str | None] = mapped_column(sa.String, nullable=True)
    apply_by_date: Mapped[str | None] = mapped_column(sa.String, nullable=True)
    special_features: Mapped[str | None] = mapped_column(sa.String, nullable=True)
    scrape_date: Mapped[str | None] = mapped_column(sa.String, nullable=True)

    # Provenance
    first_seen: Mapped[datetime] = mapped_column(sa.DateTime)
    last_updated: Mapped[datetime] = mapped_column(sa.DateTime)
    raw_payload: Mapped[dict | None] = mapped_column(sa.JSON, nullable=True)

    # FRN enrichment, mutated in place by the matching stage
    frn: Mapped[str | None] = mapped_column(sa.String, nullable=True)
    confidence_score: Mapped[float] = mapped_column(sa.Float, default=0.0)
    enrichment_batch_id: Mapped[str | None] = mapped_column(sa.String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(sa.DateTime, server_default=sa.text("CURRENT_TIMESTAMP"))
