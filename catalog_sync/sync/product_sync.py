# catalog_sync/sync/product_sync.py
# =======================================================
# ERP → catalog product sync orchestrator
# - listing fetch + grouping (one pass per invocation)
# - offset/limit paging over groups for external schedulers
# - first-import state machine
# - post-sync purge of misclassified variation products
# - relink / debug / image repair maintenance actions
# =======================================================
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.config import settings
from catalog_sync.erp.erp_attributes import extract_attributes
from catalog_sync.erp.erp_grouping import (
    ProductGroup,
    classify_listing,
    parent_external_ids,
    variation_external_ids,
)
from catalog_sync.erp.errors import ErpApiError, ErpConfigError
from catalog_sync.models.catalog import Product, ProductImage, ProductVariant
from catalog_sync.sync.components.images import EXPIRING_MARKERS, replace_product_images
from catalog_sync.sync.components.util import strip_query
from catalog_sync.sync.engine import (
    ERROR,
    IMPORTED,
    LINKED_BY_SKU,
    SKIPPED_OUTCOMES,
    UPDATED,
    ReconciliationEngine,
    purge_products,
)
from catalog_sync.sync.policy import (
    SyncPolicy,
    begin_first_import,
    finish_first_import,
    is_first_import_running,
    load_policy,
)
from catalog_sync.sync.run_ledger import cap_log, finish_run, start_run

logger = logging.getLogger(__name__)

_PURGE_CHUNK = 500


async def _linked_external_ids(session: AsyncSession) -> set[int]:
    rows = (await session.execute(
        select(Product.external_product_id).where(Product.external_product_id.is_not(None))
    )).scalars().all()
    return set(rows)


async def load_groups(erp) -> List[ProductGroup]:
    listing = await erp.list_all_products()
    groups = classify_listing(listing)
    logger.info("[SYNC] %d listing item(s) → %d group(s)", len(listing), len(groups))
    return groups


async def run_sync_products(
    session: AsyncSession,
    erp,
    blobs,
    *,
    offset: int = 0,
    limit: Optional[int] = None,
    new_only: bool = False,
    policy: Optional[SyncPolicy] = None,
    trigger: str = "sync_products",
) -> Dict[str, Any]:
    """
    Reconcile one page of groups. The page that reaches the end of a full
    (not new-only) pass also purges products that should never have stood alone.
    """
    limit = limit or settings.SYNC_DEFAULT_LIMIT
    offset = max(0, int(offset or 0))
    policy = policy or await load_policy(session)
    run_id = await start_run(session, trigger)

    groups = await load_groups(erp)
    all_groups = groups
    if new_only:
        linked = await _linked_external_ids(session)
        groups = [g for g in groups if g.parent_external_id not in linked]

    total = len(groups)
    page = groups[offset:offset + limit]
    engine = ReconciliationEngine(session, erp, blobs)

    counts = {"imported": 0, "updated": 0, "linkedBySku": 0, "skipped": 0, "errors": 0}
    log: List[Dict[str, Any]] = []
    errors: List[Dict[str, Any]] = []
    for group in page:
        try:
            res = await engine.reconcile_group(group, policy)
        except ErpConfigError as e:
            logger.error("[SYNC] run aborted at group %s: %s", group.parent_external_id, e)
            await finish_run(
                session, run_id, processed=len(log), updated=counts["imported"] + counts["updated"],
                errors=errors + [{"externalId": group.parent_external_id, "status": "error", "error": str(e)}],
            )
            raise
        entry = res.log_entry()
        log.append(entry)
        if res.outcome == IMPORTED:
            counts["imported"] += 1
        elif res.outcome == UPDATED:
            counts["updated"] += 1
        elif res.outcome == LINKED_BY_SKU:
            counts["linkedBySku"] += 1
        elif res.outcome in SKIPPED_OUTCOMES:
            counts["skipped"] += 1
        elif res.outcome == ERROR:
            counts["errors"] += 1
            errors.append(entry)

    next_offset = offset + len(page)
    has_more = next_offset < total

    cleaned = 0
    if not new_only and not has_more:
        cleaned = await purge_misclassified(session, all_groups)

    await finish_run(
        session, run_id,
        processed=len(page),
        updated=counts["imported"] + counts["updated"] + counts["linkedBySku"],
        errors=errors,
    )

    capped, truncated = cap_log(log)
    return {
        "success": True,
        "action": trigger,
        **counts,
        "cleaned": cleaned,
        "processed": len(page),
        "totalGroups": total,
        "hasMore": has_more,
        "nextOffset": next_offset if has_more else None,
        "log": capped,
        "logTruncated": truncated,
    }


async def first_import(session: AsyncSession, erp, blobs, *, offset: int = 0, limit: Optional[int] = None) -> Dict[str, Any]:
    """Fully permissive pass; when the last page is done the policy drops to stock-only."""
    if offset and await is_first_import_running(session):
        policy = (await load_policy(session)).elevated()
    else:
        policy = await begin_first_import(session)

    summary = await run_sync_products(
        session, erp, blobs, offset=offset, limit=limit, policy=policy, trigger="first_import",
    )
    if not summary["hasMore"]:
        final = await finish_first_import(session)
        summary["firstImportDone"] = True
        summary["policy"] = final.as_dict()
    else:
        summary["firstImportDone"] = False
    return summary


# ---------------------------------------------------------------------------
# Cleanup
# ---------------------------------------------------------------------------

async def purge_misclassified(session: AsyncSession, groups: List[ProductGroup]) -> int:
    """
    Delete active products whose external id was classified as a variation
    item. Group parents and inactive products are never touched.
    """
    ids = sorted(variation_external_ids(groups) - parent_external_ids(groups))
    if not ids:
        return 0
    doomed: List[int] = []
    for start in range(0, len(ids), _PURGE_CHUNK):
        chunk = ids[start:start + _PURGE_CHUNK]
        rows = (await session.execute(
            select(Product.id).where(Product.external_product_id.in_(chunk), Product.is_active.is_(True))
        )).scalars().all()
        doomed.extend(rows)
    if doomed:
        logger.info("[CLEANUP] purging %d product(s) that are ERP variations", len(doomed))
    return await purge_products(session, doomed)


async def cleanup_variations(session: AsyncSession, erp) -> Dict[str, Any]:
    run_id = await start_run(session, "cleanup_variations")
    groups = await load_groups(erp)
    cleaned = await purge_misclassified(session, groups)
    await finish_run(session, run_id, processed=len(groups), updated=cleaned, errors=[])
    return {"success": True, "action": "cleanup_variations", "cleaned": cleaned, "totalGroups": len(groups)}


# ---------------------------------------------------------------------------
# Relink
# ---------------------------------------------------------------------------

async def relink_variants(session: AsyncSession, erp, *, offset: int = 0, limit: Optional[int] = None) -> Dict[str, Any]:
    """Backfill external_variant_id on local variants matched by SKU inside linked products."""
    limit = limit or settings.SYNC_DEFAULT_LIMIT
    run_id = await start_run(session, "relink_variants")

    stmt = (
        select(Product.id, Product.external_product_id)
        .where(Product.external_product_id.is_not(None), Product.is_active.is_(True))
        .order_by(Product.id)
    )
    rows = (await session.execute(stmt)).all()
    page = rows[offset:offset + limit]

    relinked = 0
    log: List[Dict[str, Any]] = []
    errors: List[Dict[str, Any]] = []
    for product_id, external_id in page:
        try:
            detail = await erp.get_product(external_id)
        except ErpApiError as e:
            entry = {"productId": product_id, "externalId": external_id, "status": "error", "error": str(e)}
            log.append(entry)
            errors.append(entry)
            continue

        variants = (await session.execute(
            select(ProductVariant).where(ProductVariant.product_id == product_id)
        )).scalars().all()
        linked_ids = {v.external_variant_id for v in variants if v.external_variant_id is not None}
        free_by_sku = {v.sku: v for v in variants if v.sku and v.external_variant_id is None}
        n = 0
        for ev in detail.variacoes:
            if ev.id in linked_ids or not ev.codigo or ev.codigo not in free_by_sku:
                continue
            taken = (await session.execute(
                select(ProductVariant.id).where(ProductVariant.external_variant_id == ev.id)
            )).scalar_one_or_none()
            if taken is not None:
                continue
            free_by_sku.pop(ev.codigo).external_variant_id = ev.id
            n += 1
        await session.commit()
        relinked += n
        log.append({"productId": product_id, "externalId": external_id, "status": "relinked" if n else "unchanged", "relinked": n})

    next_offset = offset + len(page)
    has_more = next_offset < len(rows)
    await finish_run(session, run_id, processed=len(page), updated=relinked, errors=errors)
    capped, truncated = cap_log(log)
    return {
        "success": True,
        "action": "relink_variants",
        "relinked": relinked,
        "processed": len(page),
        "errors": len(errors),
        "total": len(rows),
        "hasMore": has_more,
        "nextOffset": next_offset if has_more else None,
        "log": capped,
        "logTruncated": truncated,
    }


# ---------------------------------------------------------------------------
# Debug
# ---------------------------------------------------------------------------

async def debug_product(session: AsyncSession, erp, external_id: int) -> Dict[str, Any]:
    """Read-only view of one ERP record and how it would map locally."""
    detail = await erp.get_product(external_id)
    local = (await session.execute(
        select(Product).where(Product.external_product_id == detail.id)
    )).scalar_one_or_none()

    variations = []
    for v in detail.variacoes:
        attrs = extract_attributes(v.nome, v.structured_attributes())
        linked = (await session.execute(
            select(ProductVariant.id).where(ProductVariant.external_variant_id == v.id)
        )).scalar_one_or_none()
        variations.append({
            "externalId": v.id,
            "name": v.nome,
            "sku": v.codigo,
            "attributes": attrs.as_dict(),
            "localVariantId": linked,
        })

    return {
        "success": True,
        "action": "debug_product",
        "externalId": detail.id,
        "name": detail.nome,
        "sku": detail.codigo,
        "parentId": detail.parent_id,
        "active": detail.is_active,
        "categoryId": detail.category_id,
        "images": detail.image_urls(),
        "attributes": extract_attributes(detail.nome).as_dict(),
        "variations": variations,
        "local": None if local is None else {
            "productId": local.id,
            "name": local.name,
            "isActive": local.is_active,
            "syncStatus": local.erp_sync_status,
            "lastError": local.erp_last_error,
        },
    }


# ---------------------------------------------------------------------------
# Image repair
# ---------------------------------------------------------------------------

async def repair_images(session: AsyncSession, erp, blobs, *, dry_run: bool = False, limit: int = 50) -> Dict[str, Any]:
    """
    Re-host images whose stored URL still carries an expiring signature.
    Unlinked products only get the query string stripped.
    """
    cond = or_(*[ProductImage.url.contains(m) for m in EXPIRING_MARKERS])
    rows = (await session.execute(
        select(ProductImage.product_id).where(cond).distinct().order_by(ProductImage.product_id)
    )).scalars().all()
    product_ids = list(rows)[: max(1, int(limit))]

    log: List[Dict[str, Any]] = []
    repaired = stripped = skipped = failed = 0
    for pid in product_ids:
        product = await session.get(Product, pid, populate_existing=True)
        if product is None or not product.is_active:
            skipped += 1
            log.append({"productId": pid, "status": "skipped_inactive"})
            continue
        if dry_run:
            log.append({"productId": pid, "status": "would_repair", "externalId": product.external_product_id})
            continue

        if product.external_product_id is None:
            images = (await session.execute(
                select(ProductImage).where(ProductImage.product_id == pid, cond)
            )).scalars().all()
            for img in images:
                img.url = strip_query(img.url)
            await session.commit()
            stripped += 1
            log.append({"productId": pid, "status": "stripped", "images": len(images)})
            continue

        try:
            detail = await erp.get_product(product.external_product_id)
            count = await replace_product_images(session, erp, blobs, pid, detail.image_urls(), alt_text=product.name)
            await session.commit()
            repaired += 1
            log.append({"productId": pid, "status": "repaired", "images": count})
        except ErpApiError as e:
            await session.rollback()
            failed += 1
            log.append({"productId": pid, "status": "error", "error": str(e)})

    logger.info("[IMAGES] repair: candidates=%d repaired=%d stripped=%d failed=%d", len(product_ids), repaired, stripped, failed)
    capped, truncated = cap_log(log)
    return {
        "success": True,
        "action": "repair_images",
        "dryRun": dry_run,
        "candidates": len(product_ids),
        "repaired": repaired,
        "stripped": stripped,
        "skipped": skipped,
        "errors": failed,
        "log": capped,
        "logTruncated": truncated,
    }
