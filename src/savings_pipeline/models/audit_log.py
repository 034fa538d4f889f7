"""Audit log for operator actions on reference data and batches."""

from __future__ import annotations

from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from savings_pipeline.models.base import Base


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    # "override_add", "override_remove", "reference_load", "batch_reset"
    action_type: Mapped[str] = mapped_column(sa.String)
    subject: Mapped[str | None] = mapped_column(sa.String, nullable=True)
    operator: Mapped[str] = mapped_column(sa.String, default="anonymous")
    details: Mapped[dict | None] = mapped_column(sa.JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        sa.DateTime, server_default=sa.text("CURRENT_TIMESTAMP")
    )
