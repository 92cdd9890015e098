# catalog_sync/sync/stock_sync.py
# Periodic full-catalog stock refresh plus the operator "sync one product's stock".
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.erp.errors import ErpApiError
from catalog_sync.models.catalog import Product, ProductVariant
from catalog_sync.sync.components.util import utcnow
from catalog_sync.sync.engine import ReconciliationEngine
from catalog_sync.sync.policy import SyncPolicy, load_policy
from catalog_sync.sync.run_ledger import cap_log, finish_run, start_run

logger = logging.getLogger(__name__)


async def batch_stock_sync(session: AsyncSession, erp, *, trigger: str = "cron_stock_sync") -> Dict[str, Any]:
    """
    Refresh stock for every linked product in batches of at most 50 ERP ids.
    Runs independently of webhook delivery; operator-deactivated products
    are left alone.
    """
    policy = await load_policy(session)
    if not policy.sync_stock:
        logger.info("[STOCK] stock sync disabled by policy; skipping")
        return {"success": True, "action": trigger, "skipped": True, "reason": "sync_disabled"}

    run_id = await start_run(session, trigger)
    engine = ReconciliationEngine(session, erp, blobs=None)

    products = (await session.execute(
        select(Product).where(
            Product.external_product_id.is_not(None),
            or_(Product.is_active.is_(True), Product.erp_sync_status == "deleted"),
        ).order_by(Product.id)
    )).scalars().all()
    by_id = {p.id: p for p in products}

    variants = (await session.execute(
        select(ProductVariant).where(ProductVariant.product_id.in_(list(by_id)))
    )).scalars().all() if by_id else []

    # ERP id → local variants it drives
    targets: Dict[int, List[ProductVariant]] = {}
    for v in variants:
        if v.external_variant_id is not None:
            targets.setdefault(v.external_variant_id, []).append(v)
    for p in products:
        defaults = [v for v in variants if v.product_id == p.id and v.external_variant_id is None]
        if defaults and not any(v.product_id == p.id and v.external_variant_id is not None for v in variants):
            targets.setdefault(p.external_product_id, []).extend(defaults)

    ids = list(targets)
    errors: List[Dict[str, Any]] = []
    updated = reactivated = 0
    batch_size = getattr(erp, "stock_batch_size", 50)
    for start in range(0, len(ids), batch_size):
        chunk = ids[start:start + batch_size]
        try:
            balances = await erp.get_stock_balances(chunk)
        except ErpApiError as e:
            logger.warning("[STOCK] batch %d failed: %s", start // batch_size + 1, e)
            errors.append({"batch": start // batch_size + 1, "ids": len(chunk), "error": str(e)})
            continue
        for ext_id, qty in balances.items():
            for v in targets.get(ext_id, []):
                outcome = await engine.apply_variant_stock(v, qty, by_id.get(v.product_id))
                if outcome == "updated":
                    updated += 1
                elif outcome == "reactivated":
                    updated += 1
                    reactivated += 1
        await session.commit()

    await finish_run(session, run_id, processed=len(ids), updated=updated, errors=errors)
    logger.info("[STOCK] batch sync: ids=%d updated=%d reactivated=%d errors=%d", len(ids), updated, reactivated, len(errors))
    return {
        "success": True,
        "action": trigger,
        "products": len(products),
        "externalIds": len(ids),
        "updated": updated,
        "reactivated": reactivated,
        "errors": len(errors),
        "log": cap_log(errors)[0],
    }


async def sync_single_stock(
    session: AsyncSession, erp, product_id: int, policy: Optional[SyncPolicy] = None
) -> Dict[str, Any]:
    """Operator-initiated stock refresh for one local product."""
    product = await session.get(Product, product_id, populate_existing=True)
    if product is None:
        return {"success": False, "error": "produto_nao_encontrado", "productId": product_id}
    if not product.is_active:
        return {"success": False, "error": "produto_inativo", "productId": product_id}
    policy = policy or await load_policy(session)
    if not policy.sync_stock:
        return {"success": False, "error": "sync_disabled", "productId": product_id}

    variants = list((await session.execute(
        select(ProductVariant).where(ProductVariant.product_id == product_id).order_by(ProductVariant.id)
    )).scalars().all())

    try:
        if product.external_product_id is None:
            sku = product.sku or next((v.sku for v in variants if v.sku), None)
            if not sku:
                return {"success": False, "error": "sem_vinculo_erp", "productId": product_id}
            found = await erp.find_products_by_sku(sku)
            if not found:
                return {"success": False, "error": "sku_nao_encontrado", "productId": product_id, "sku": sku}
            product.external_product_id = found[0].external_id
            await session.commit()
            logger.info("[STOCK] product %s linked to %s via SKU %s", product_id, found[0].external_id, sku)

        detail = await erp.get_product(product.external_product_id)
        erp_by_sku = {ev.codigo: ev.id for ev in detail.variacoes if ev.codigo}
        linked_ids = {v.external_variant_id for v in variants if v.external_variant_id is not None}

        # backfill variant links by SKU before asking for balances
        for v in variants:
            if v.external_variant_id is None and v.sku and v.sku in erp_by_sku and erp_by_sku[v.sku] not in linked_ids:
                v.external_variant_id = erp_by_sku[v.sku]
                linked_ids.add(v.external_variant_id)

        ids = [v.external_variant_id for v in variants if v.external_variant_id is not None]
        defaults = [v for v in variants if v.external_variant_id is None]
        if not detail.variacoes and defaults:
            ids.append(product.external_product_id)
        balances = await erp.get_stock_balances(ids) if ids else {}

        updated = 0
        for v in variants:
            key = v.external_variant_id if v.external_variant_id is not None else (
                product.external_product_id if not detail.variacoes else None
            )
            if key is not None and key in balances and v.stock_quantity != balances[key]:
                v.stock_quantity = balances[key]
                updated += 1

        product.erp_sync_status = "synced"
        product.erp_last_synced_at = utcnow()
        product.erp_last_error = None
        await session.commit()
    except (ErpApiError, IntegrityError) as e:
        await session.rollback()
        product = await session.get(Product, product_id, populate_existing=True)
        if product is not None:
            product.erp_sync_status = "error"
            product.erp_last_error = str(e)[:1000]
            await session.commit()
        return {"success": False, "error": str(e), "productId": product_id}

    logger.info("[STOCK] product %s: %d variant(s) updated", product_id, updated)
    return {"success": True, "productId": product_id, "updated": updated, "variants": len(variants)}
