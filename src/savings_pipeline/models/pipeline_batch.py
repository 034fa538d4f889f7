"""One row per pipeline execution."""

from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from savings_pipeline.models.base import Base


class PipelineBatch(Base):
    __tablename__ = "pipeline_batches"
    __table_args__ = (
        sa.CheckConstraint("status IN ('running', 'completed', 'failed')", name="ck_pipeline_batches_status"),
    )

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[str] = mapped_column(sa.String, unique=True)
    status: Mapped[str] = mapped_column(sa.String, default="running")
    stop_after_stage: Mapped[str | None] = mapped_column(sa.String, nullable=True)
    accumulate_raw: Mapped[bool] = mapped_column(sa.Boolean, default=True)
    stages_completed: Mapped[list] = mapped_column(sa.JSON, default=list)
    input_files: Mapped[list | None] = mapped_column(sa.JSON, nullable=True)

    products_processed: Mapped[int] = mapped_column(sa.Integer, default=0)
    products_valid: Mapped[int] = mapped_column(sa.Integer, default=0)
    products_rejected: Mapped[int] = mapped_column(sa.Integer, default=0)
    products_enriched: Mapped[int] = mapped_column(sa.Integer, default=0)
    final_product_count: Mapped[int | None] = mapped_column(sa.Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(sa.Text, nullable=True)

    started_at: Mapped[datetime] = mapped_column(sa.DateTime, server_default=sa.text("CURRENT_TIMESTAMP"))
    finished_at: Mapped[datetime | None] = mapped_column(sa.DateTime, nullable=True)
