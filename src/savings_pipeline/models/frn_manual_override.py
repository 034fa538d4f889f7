"""Operator-maintained scraped-name to FRN assignments."""

from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from savings_pipeline.models.base import Base


class FRNManualOverride(Base):
    __tablename__ = "frn_manual_overrides"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    scraped_name: Mapped[str] = mapped_column(sa.String, unique=True)
    frn: Mapped[str] = mapped_column(sa.String)
    firm_name: Mapped[str | None] = mapped_column(sa.String, nullable=True)
    confidence_score: Mapped[float] = mapped_column(sa.Float, default=1.0)
    notes: Mapped[str | None] = mapped_column(sa.Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime, server_default=sa.text("CURRENT_TIMESTAMP"))
