# catalog_sync/sync/policy.py
# ---------------------------------------------------------
# Sync policy: which fields the ERP may overwrite after the
# first import. Loaded once per run and passed explicitly.
# ---------------------------------------------------------
from __future__ import annotations

import logging
from dataclasses import dataclass, fields, replace
from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.models.sync_policy import SyncConfig

logger = logging.getLogger(__name__)

# flags reset to False when a first import completes
NON_STOCK_FLAGS = (
    "sync_titles",
    "sync_descriptions",
    "sync_images",
    "sync_prices",
    "sync_dimensions",
    "sync_sku_gtin",
    "sync_variant_active",
)

# camelCase names accepted from the trigger API
_ALIASES = {
    "syncStock": "sync_stock",
    "syncTitles": "sync_titles",
    "syncDescriptions": "sync_descriptions",
    "syncImages": "sync_images",
    "syncPrices": "sync_prices",
    "syncDimensions": "sync_dimensions",
    "syncSkuGtin": "sync_sku_gtin",
    "syncVariantActive": "sync_variant_active",
    "importNewProducts": "import_new_products",
    "mergeBySku": "merge_by_sku",
    "firstImportDone": "first_import_done",
}


@dataclass(frozen=True)
class SyncPolicy:
    sync_stock: bool = True
    sync_titles: bool = False
    sync_descriptions: bool = False
    sync_images: bool = False
    sync_prices: bool = False
    sync_dimensions: bool = False
    sync_sku_gtin: bool = False
    sync_variant_active: bool = False
    import_new_products: bool = True
    merge_by_sku: bool = True
    first_import_done: bool = False

    def elevated(self) -> "SyncPolicy":
        """Everything on: the first-import pass."""
        return replace(self, **{name: True for name in (*NON_STOCK_FLAGS, "sync_stock", "import_new_products", "merge_by_sku")})

    def stock_only(self) -> "SyncPolicy":
        return replace(self, **{name: False for name in NON_STOCK_FLAGS})

    def with_overrides(self, overrides: Dict[str, Any]) -> "SyncPolicy":
        known = {f.name for f in fields(self)}
        clean: Dict[str, bool] = {}
        for key, val in (overrides or {}).items():
            name = _ALIASES.get(key, key)
            if name in known and isinstance(val, bool):
                clean[name] = val
        return replace(self, **clean)

    def as_dict(self) -> Dict[str, bool]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def _from_row(row: SyncConfig) -> SyncPolicy:
    return SyncPolicy(**{f.name: bool(getattr(row, f.name)) for f in fields(SyncPolicy)})


async def _get_row(session: AsyncSession) -> SyncConfig:
    row = await session.get(SyncConfig, 1, populate_existing=True)
    if row is None:
        defaults = SyncPolicy()
        row = SyncConfig(id=1, first_import_running=False, **defaults.as_dict())
        session.add(row)
        await session.flush()
    return row


async def load_policy(session: AsyncSession) -> SyncPolicy:
    return _from_row(await _get_row(session))


async def save_policy(session: AsyncSession, policy: SyncPolicy) -> SyncPolicy:
    row = await _get_row(session)
    for name, val in policy.as_dict().items():
        setattr(row, name, val)
    await session.commit()
    logger.info("[POLICY] saved %s", policy.as_dict())
    return policy


async def update_policy(session: AsyncSession, overrides: Dict[str, Any]) -> SyncPolicy:
    current = await load_policy(session)
    return await save_policy(session, current.with_overrides(overrides))


async def is_first_import_running(session: AsyncSession) -> bool:
    return bool((await _get_row(session)).first_import_running)


async def begin_first_import(session: AsyncSession) -> SyncPolicy:
    """NORMAL → FIRST_IMPORT. Returns the elevated policy to run with."""
    row = await _get_row(session)
    row.first_import_running = True
    await session.commit()
    logger.info("[POLICY] first import started")
    return _from_row(row).elevated()


async def finish_first_import(session: AsyncSession) -> SyncPolicy:
    """FIRST_IMPORT → NORMAL: non-stock flags off, first_import_done on."""
    row = await _get_row(session)
    for name in NON_STOCK_FLAGS:
        setattr(row, name, False)
    row.first_import_done = True
    row.first_import_running = False
    await session.commit()
    policy = _from_row(row)
    logger.info("[POLICY] first import finished; policy now %s", policy.as_dict())
    return policy
