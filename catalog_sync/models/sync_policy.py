# catalog_sync/models/sync_policy.py
from __future__ import annotations
from datetime import datetime, timezone
from sqlalchemy import Integer, Boolean, DateTime
from sqlalchemy.orm import Mapped, mapped_column
from catalog_sync.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncConfig(Base):
    """Singleton row (id=1) holding the field-overwrite flags."""
    __tablename__ = "sync_policy"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    sync_stock: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    sync_titles: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sync_descriptions: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sync_images: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sync_prices: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sync_dimensions: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sync_sku_gtin: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sync_variant_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    import_new_products: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    merge_by_sku: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    first_import_done: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    first_import_running: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)
