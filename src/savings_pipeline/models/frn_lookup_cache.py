"""Materialised name index built from the FRN reference tables."""

from __future__ import annotations

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from savings_pipeline.models.base import Base


class FRNLookupCache(Base):
    __tablename__ = "frn_lookup_cache"

    id: Mapped[int] = mapped_column(sa.Integer, primary_key=True, autoincrement=True)
    frn: Mapped[str] = mapped_column(sa.String)
    canonical_name: Mapped[str] = mapped_column(sa.String)
    search_name: Mapped[str] = mapped_column(sa.String, index=True)
    match_type: Mapped[str] = mapped_column(sa.String)  # manual_override, direct_match, name_variation, shared_brand
    confidence_score: Mapped[float] = mapped_column(sa.Float)
    priority_rank: Mapped[int] = mapped_column(sa.Integer)
