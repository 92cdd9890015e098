# catalog_sync/models/credentials.py
from __future__ import annotations
from datetime import datetime, timezone
from sqlalchemy import Integer, BigInteger, DateTime, Text
from sqlalchemy.orm import Mapped, mapped_column
from catalog_sync.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ErpCredentials(Base):
    """Singleton row (id=1) with the OAuth token pair."""
    __tablename__ = "erp_credentials"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    access_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)  # unix seconds
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
