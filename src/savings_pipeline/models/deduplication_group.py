"""One row per selection unit produced by the deduplication engine."""

from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from savings_pipeline.models.base import Base


class DeduplicationGroup(Base):
    __tablename__ = "deduplication_groups"
    __table_args__ = (
        sa.CheckConstraint("products_in_group >= 1", name="ck_deduplication_groups_size"),
    )

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[str] = mapped_column(sa.String, index=True)
    business_key: Mapped[str] = mapped_column(sa.String)
    products_in_group: Mapped[int] = mapped_column(sa.Integer)
    platforms_in_group: Mapped[list] = mapped_column(sa.JSON)
    sources_in_group: Mapped[list] = mapped_column(sa.JSON)
    selected_product_id: Mapped[str] = mapped_column(sa.String)
    selected_product_platform: Mapped[str] = mapped_column(sa.String)
    selected_product_source: Mapped[str] = mapped_column(sa.String)
    selection_reason: Mapped[str] = mapped_column(sa.String)
    quality_scores: Mapped[dict] = mapped_column(sa.JSON)  # product_id -> score
    rejected_products: Mapped[list] = mapped_column(sa.JSON)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime, server_default=sa.text("CURRENT_TIMESTAMP"))
