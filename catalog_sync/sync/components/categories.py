# catalog_sync/sync/components/categories.py
from __future__ import annotations

import logging
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.erp.erp_attributes import normalize_text
from catalog_sync.erp.errors import ErpApiError
from catalog_sync.models.catalog import Category
from catalog_sync.sync.components.util import slugify

logger = logging.getLogger(__name__)

OVERLAP_THRESHOLD = 0.5
MIN_TOKEN_LEN = 3


def _tokens(name: str) -> set[str]:
    return {t for t in normalize_text(name).replace("-", " ").split() if len(t) >= MIN_TOKEN_LEN}


def token_overlap(erp_name: str, local_name: str) -> float:
    """Shared tokens / ERP-name tokens."""
    erp_tokens = _tokens(erp_name)
    if not erp_tokens:
        return 0.0
    return len(erp_tokens & _tokens(local_name)) / len(erp_tokens)


def match_category(erp_name: str, categories: list[Category]) -> Optional[Category]:
    """Exact name → substring containment → best token overlap (≥ threshold)."""
    target = normalize_text(erp_name)
    if not target:
        return None
    for c in categories:
        if normalize_text(c.name) == target:
            return c
    for c in categories:
        local = normalize_text(c.name)
        if local and (local in target or target in local):
            return c
    best, best_score = None, 0.0
    for c in categories:
        score = token_overlap(erp_name, c.name)
        if score > best_score:
            best, best_score = c, score
    if best is not None and best_score >= OVERLAP_THRESHOLD:
        return best
    return None


async def unique_slug(session: AsyncSession, model, base: str) -> str:
    """base, base-2, base-3 … first one not taken in model.slug."""
    base = slugify(base)
    rows = (await session.execute(select(model.slug).where(model.slug.like(f"{base}%")))).scalars().all()
    taken = set(rows)
    if base not in taken:
        return base
    n = 2
    while f"{base}-{n}" in taken:
        n += 1
    return f"{base}-{n}"


class CategoryResolver:
    """Per-run cache of ERP category id → local category id."""

    def __init__(self, session: AsyncSession, erp):
        self.session = session
        self.erp = erp
        self._cache: Dict[int, Optional[int]] = {}
        self._pending: set[int] = set()

    async def resolve(self, erp_category_id: Optional[int]) -> Optional[int]:
        if not erp_category_id:
            return None
        if erp_category_id in self._cache:
            return self._cache[erp_category_id]

        try:
            erp_cat = await self.erp.get_category(erp_category_id)
        except ErpApiError as e:
            logger.warning("[SYNC] category %s lookup failed: %s", erp_category_id, e)
            erp_cat = None
        name = (erp_cat.descricao if erp_cat else "").strip()
        if not name:
            self._cache[erp_category_id] = None
            return None

        existing = list((await self.session.execute(select(Category))).scalars().all())
        found = match_category(name, existing)
        if found is None:
            found = Category(name=name, slug=await unique_slug(self.session, Category, name), is_active=True)
            self.session.add(found)
            await self.session.flush()
            self._pending.add(erp_category_id)
            logger.info("[SYNC] created category %r (id=%s)", name, found.id)
        self._cache[erp_category_id] = found.id
        return found.id

    def committed(self) -> None:
        self._pending.clear()

    def rolled_back(self) -> None:
        """Forget categories created inside a transaction that was rolled back."""
        for key in self._pending:
            self._cache.pop(key, None)
        self._pending.clear()
