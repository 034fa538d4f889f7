"""Deduplicated winners served to downstream consumers."""

from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from savings_pipeline.models.base import Base


class CurrentProduct(Base):
    __tablename__ = "current_products"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[str] = mapped_column(sa.String, unique=True)
    batch_id: Mapped[str] = mapped_column(sa.String, index=True)
    business_key: Mapped[str] = mapped_column(sa.String, index=True)

    bank_name: Mapped[str] = mapped_column(sa.String)
    product_name: Mapped[str | None] = mapped_column(sa.String, nullable=True)
    platform: Mapped[str] = mapped_column(sa.String)
    source: Mapped[str] = mapped_column(sa.String)
    method: Mapped[str] = mapped_column(sa.String)
    account_type: Mapped[str] = mapped_column(sa.String)
    aer_rate: Mapped[float] = mapped_column(sa.Float)
    gross_rate: Mapped[float | None] = mapped_column(sa.Float, nullable=True)
    term_months: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
    notice_period_days: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
    min_deposit: Mapped[float | None] = mapped_column(sa.Float, nullable=True)
    max_deposit: Mapped[float | None] = mapped_column(sa.Float, nullable=True)
    fscs_protected: Mapped[bool] = mapped_column(sa.Boolean, default=True)

    frn: Mapped[str | None] = mapped_column(sa.String, nullable=True)
    confidence_score: Mapped[float] = mapped_column(sa.Float, default=0.0)
    quality_score: Mapped[float | None] = mapped_column(sa.Float, nullable=True)
    selection_reason: Mapped[str] = mapped_column(sa.String)
    last_updated: Mapped[datetime | None] = mapped_column(sa.DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(sa.DateTime, server_default=sa.text("CURRENT_TIMESTAMP"))
