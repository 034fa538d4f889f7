"""SQLAlchemy model for category-scoped runtime configuration."""

from __future__ import annotations

from datetime import datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from savings_pipeline.models.base import Base


class ConfigSetting(Base):
    """One override value, addressed by ``(category, config_key)``.

    ``category`` names a section of ``PipelineConfig`` (``ingestion``,
    ``frn_matching``, ``deduplication``, ...); ``config_key`` names a field
    in that section.  Values are stored as JSON so lists and maps round-trip.
    """

    __tablename__ = "config_settings"
    __table_args__ = (sa.UniqueConstraint("category", "config_key", name="uq_config_category_key"),)

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    category: Mapped[str] = mapped_column(sa.String(50))
    config_key: Mapped[str] = mapped_column(sa.String(100))
    config_value: Mapped[Any] = mapped_column(sa.JSON)
    updated_at: Mapped[datetime] = mapped_column(
        sa.DateTime, server_default=sa.text("CURRENT_TIMESTAMP"), onupdate=sa.func.now()
    )
    updated_by: Mapped[str] = mapped_column(sa.String(100), default="system")
