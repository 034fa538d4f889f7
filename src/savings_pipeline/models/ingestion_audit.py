"""Per-product validation audit written by the ingestion stage."""

from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from savings_pipeline.models.base import Base


class IngestionAudit(Base):
    __tablename__ = "json_ingestion_audit"
    __table_args__ = (
        sa.CheckConstraint("validation_status IN ('valid', 'invalid')", name="ck_ingestion_audit_status"),
    )

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[str] = mapped_column(sa.String, index=True)
    source: Mapped[str] = mapped_column(sa.String)
    method: Mapped[str] = mapped_column(sa.String)
    product_id: Mapped[str] = mapped_column(sa.String)
    record_index: Mapped[int] = mapped_column(sa.Integer)
    bank_name: Mapped[str | None] = mapped_column(sa.String, nullable=True)
    platform: Mapped[str | None] = mapped_column(sa.String, nullable=True)

    validation_status: Mapped[str] = mapped_column(sa.String)
    validation_details: Mapped[list] = mapped_column(sa.JSON)
    rejection_reasons: Mapped[list] = mapped_column(sa.JSON)
    normalization_applied: Mapped[dict] = mapped_column(sa.JSON)
    data_completeness_score: Mapped[float | None] = mapped_column(sa.Float, nullable=True)
    source_reliability: Mapped[float | None] = mapped_column(sa.Float, nullable=True)

    created_at: Mapped[datetime] = mapped_column(sa.DateTime, server_default=sa.text("CURRENT_TIMESTAMP"))
