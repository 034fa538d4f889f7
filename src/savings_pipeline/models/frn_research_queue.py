"""Institution names that could not be assigned an FRN automatically."""

from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from savings_pipeline.models.base import Base


class FRNResearchQueueItem(Base):
    __tablename__ = "frn_research_queue"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    normalized_name: Mapped[str] = mapped_column(sa.String, unique=True)
    original_name: Mapped[str] = mapped_column(sa.String)
    occurrence_count: Mapped[int] = mapped_column(sa.Integer, default=1)
    best_candidate_frn: Mapped[str | None] = mapped_column(sa.String, nullable=True)
    best_candidate_confidence: Mapped[float | None] = mapped_column(sa.Float, nullable=True)
    first_batch_id: Mapped[str] = mapped_column(sa.String)
    last_batch_id: Mapped[str] = mapped_column(sa.String)
    status: Mapped[str] = mapped_column(sa.String, default="pending")
    created_at: Mapped[datetime] = mapped_column(sa.DateTime, server_default=sa.text("CURRENT_TIMESTAMP"))
