"""Trading names operated under another institution's FRN."""

from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from savings_pipeline.models.base import Base


class FRNSharedBrand(Base):
    __tablename__ = "frn_shared_brands"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    primary_frn: Mapped[str] = mapped_column(sa.String, index=True)
    trading_name: Mapped[str] = mapped_column(sa.String, unique=True)
    created_at: Mapped[datetime] = mapped_column(sa.DateTime, server_default=sa.text("CURRENT_TIMESTAMP"))
