"""Per-product FRN resolution audit."""

from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from savings_pipeline.models.base import Base


class FRNMatchingAudit(Base):
    __tablename__ = "frn_matching_audit"
    __table_args__ = (
        sa.CheckConstraint(
            "decision_routing IN ('auto_assigned', 'research_queue', 'manual_override')",
            name="ck_frn_matching_audit_routing",
        ),
        sa.Index("ix_frn_matching_audit_batch_product", "batch_id", "product_id"),
    )

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[str] = mapped_column(sa.String, index=True)
    product_id: Mapped[str] = mapped_column(sa.String)
    original_bank_name: Mapped[str] = mapped_column(sa.String)
    normalized_bank_name: Mapped[str] = mapped_column(sa.String)
    normalization_steps: Mapped[list] = mapped_column(sa.JSON)
    candidate_frns: Mapped[list] = mapped_column(sa.JSON)
    decision_routing: Mapped[str] = mapped_column(sa.String)
    final_frn: Mapped[str | None] = mapped_column(sa.String, nullable=True)
    final_confidence: Mapped[float] = mapped_column(sa.Float)
    database_query_method: Mapped[str] = mapped_column(sa.String)  # exact_match, alias_match, fuzzy_match, no_match
    processing_time_ms: Mapped[float] = mapped_column(sa.Float)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime, server_default=sa.text("CURRENT_TIMESTAMP"))
