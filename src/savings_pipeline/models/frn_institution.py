"""Regulator register entries: one row per authorised institution."""

from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from savings_pipeline.models.base import Base


class FRNInstitution(Base):
    __tablename__ = "frn_institutions"

    frn: Mapped[str] = mapped_column(sa.String, primary_key=True)
    firm_name: Mapped[str] = mapped_column(sa.String)
    name_variations: Mapped[list | None] = mapped_column(sa.JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime, server_default=sa.text("CURRENT_TIMESTAMP"))
