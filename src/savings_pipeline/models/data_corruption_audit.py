"""Per-partition corruption ratio recorded during ingestion."""

from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from savings_pipeline.models.base import Base


class DataCorruptionAudit(Base):
    __tablename__ = "data_corruption_audit"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[str] = mapped_column(sa.String, index=True)
    source: Mapped[str] = mapped_column(sa.String)
    method: Mapped[str] = mapped_column(sa.String)
    corruption_type: Mapped[str] = mapped_column(sa.String)  # "validation_failure"
    affected_count: Mapped[int] = mapped_column(sa.Integer)
    total_count: Mapped[int] = mapped_column(sa.Integer)
    corruption_ratio: Mapped[float] = mapped_column(sa.Float)
    threshold: Mapped[float] = mapped_column(sa.Float)
    threshold_exceeded: Mapped[bool] = mapped_column(sa.Boolean)
    action_taken: Mapped[str] = mapped_column(sa.String, default="continue")
    created_at: Mapped[datetime] = mapped_column(sa.DateTime, server_default=sa.text("CURRENT_TIMESTAMP"))
