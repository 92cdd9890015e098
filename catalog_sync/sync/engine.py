# catalog_sync/sync/engine.py
# =======================================================
# ERP → canonical catalog reconciliation
# - resolve product (external id → SKU link → import)
# - policy-gated field updates for existing products
# - image re-hosting, category matching
# - variant set reconciliation (link / create / retire)
# - stock primitives shared by webhooks and the batch job
# =======================================================
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.erp.erp_attributes import SIZE_SENTINEL, VariantAttributes, extract_attributes
from catalog_sync.erp.erp_grouping import ProductGroup, VariationItem
from catalog_sync.erp.erp_models import ErpProductDetail
from catalog_sync.erp.errors import ErpApiError, ErpConfigError
from catalog_sync.models.catalog import Product, ProductCharacteristic, ProductVariant
from catalog_sync.sync.components.categories import CategoryResolver, unique_slug
from catalog_sync.sync.components.fields import (
    characteristics,
    first_import_fields,
    policy_update_fields,
    syncable_fields,
    webhook_safe_fields,
)
from catalog_sync.sync.components.images import replace_product_images
from catalog_sync.sync.components.util import utcnow
from catalog_sync.sync.policy import SyncPolicy

logger = logging.getLogger(__name__)

IMPORTED = "imported"
UPDATED = "updated"
LINKED_BY_SKU = "linked_by_sku"
IGNORED_INACTIVE = "ignored_inactive"
SKIPPED_IMPORT_DISABLED = "skipped_import_disabled"
SKIPPED_ALREADY_PROCESSED = "skipped_already_processed"
NOT_FOUND = "not_found"
SKIPPED_SYNC_DISABLED = "skipped_sync_disabled"
ERROR = "error"

SKIPPED_OUTCOMES = (IGNORED_INACTIVE, SKIPPED_IMPORT_DISABLED, SKIPPED_ALREADY_PROCESSED, NOT_FOUND, SKIPPED_SYNC_DISABLED)


@dataclass
class GroupResult:
    external_id: int
    name: str
    outcome: str
    product_id: Optional[int] = None
    variant_count: int = 0
    error: Optional[str] = None

    @property
    def imported(self) -> bool:
        return self.outcome == IMPORTED

    @property
    def updated(self) -> bool:
        return self.outcome == UPDATED

    @property
    def linked_by_sku(self) -> bool:
        return self.outcome == LINKED_BY_SKU

    def log_entry(self) -> dict:
        entry = {
            "externalId": self.external_id,
            "name": self.name,
            "status": self.outcome,
            "variants": self.variant_count,
        }
        if self.product_id is not None:
            entry["productId"] = self.product_id
        if self.error:
            entry["error"] = self.error
        return entry


@dataclass
class _ErpVariantSpec:
    external_id: int
    name: str
    sku: Optional[str]
    active: bool
    attrs: VariantAttributes
    price: Optional[float] = None


@dataclass
class StockResult:
    external_id: int
    resolved_via: Optional[str] = None  # variant | product | sku
    variant_ids: List[int] = field(default_factory=list)
    updated: int = 0
    reactivated: bool = False
    ignored_inactive: bool = False


class ReconciliationEngine:
    """
    One instance per run. Groups are processed sequentially; every group is
    committed (or rolled back) on its own so one failure never aborts the run.
    """

    def __init__(self, session: AsyncSession, erp, blobs):
        self.session = session
        self.erp = erp
        self.blobs = blobs
        self.categories = CategoryResolver(session, erp)
        self.processed_parent_ids: Set[int] = set()

    # ------------------------------------------------------------------
    # lookups
    # ------------------------------------------------------------------

    async def _product_by_external(self, external_id: int) -> Optional[Product]:
        stmt = select(Product).where(Product.external_product_id == int(external_id))
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def _variant_by_external(self, external_id: int) -> Optional[ProductVariant]:
        stmt = select(ProductVariant).where(ProductVariant.external_variant_id == int(external_id))
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def _variants_of(self, product_id: int) -> List[ProductVariant]:
        stmt = select(ProductVariant).where(ProductVariant.product_id == product_id).order_by(ProductVariant.id)
        return list((await self.session.execute(stmt)).scalars().all())

    async def _variants_by_sku(self, sku: str) -> List[ProductVariant]:
        stmt = select(ProductVariant).where(ProductVariant.sku == sku).order_by(ProductVariant.id)
        return list((await self.session.execute(stmt)).scalars().all())

    # ------------------------------------------------------------------
    # group reconciliation
    # ------------------------------------------------------------------

    async def reconcile_group(self, group: ProductGroup, policy: SyncPolicy) -> GroupResult:
        try:
            return await self._reconcile(group, policy)
        except ErpConfigError:
            # credentials are gone for every group, not just this one
            await self.session.rollback()
            self.categories.rolled_back()
            raise
        except Exception as e:  # one bad group must not abort the run
            await self.session.rollback()
            self.categories.rolled_back()
            msg = str(e) or e.__class__.__name__
            if isinstance(e, ErpApiError):
                logger.warning("[SYNC] group %s failed: %s", group.parent_external_id, msg)
            else:
                logger.exception("[SYNC] group %s failed", group.parent_external_id)
            try:
                await self._stamp_error(group.parent_external_id, msg)
            except Exception:
                await self.session.rollback()
                logger.exception("[SYNC] could not record error status for %s", group.parent_external_id)
            return GroupResult(group.parent_external_id, group.display_name, ERROR, error=msg)

    async def _reconcile(self, group: ProductGroup, policy: SyncPolicy) -> GroupResult:
        parent_id = group.parent_external_id
        if parent_id in self.processed_parent_ids:
            return GroupResult(parent_id, group.display_name, SKIPPED_ALREADY_PROCESSED)

        detail = await self.erp.get_product(parent_id)
        true_parent = detail.parent_id
        if true_parent is not None:
            # the record we fetched is itself a variation: redirect to its parent
            if true_parent in self.processed_parent_ids:
                self.processed_parent_ids.add(parent_id)
                return GroupResult(
                    parent_id, group.display_name, SKIPPED_ALREADY_PROCESSED,
                    error=f"parent {true_parent} already processed in this run",
                )
            logger.info("[SYNC] %s is a variation of %s; redirecting", parent_id, true_parent)
            group = self._redirected_group(group, true_parent)
            self.processed_parent_ids.add(parent_id)
            detail = await self.erp.get_product(true_parent)

        self.processed_parent_ids.add(detail.id)
        return await self._reconcile_detail(group, detail, policy)

    @staticmethod
    def _redirected_group(group: ProductGroup, true_parent: int) -> ProductGroup:
        items = list(group.variation_items)
        if group.parent_list_item is not None:
            it = group.parent_list_item
            items.insert(0, VariationItem(it.external_id, group.base_name or it.raw_name, "", raw_name=it.raw_name, sku=it.sku))
        return ProductGroup(parent_external_id=true_parent, variation_items=items, base_name=group.base_name)

    async def _reconcile_detail(self, group: ProductGroup, detail: ErpProductDetail, policy: SyncPolicy) -> GroupResult:
        display = group.display_name or detail.nome
        product = await self._product_by_external(detail.id)
        outcome = UPDATED

        if product is None and policy.merge_by_sku:
            candidate = await self._find_sku_candidate(detail)
            if candidate is not None:
                if not candidate.is_active:
                    logger.info("[SYNC] SKU match for %s is inactive product %s; ignoring", detail.id, candidate.id)
                    return GroupResult(detail.id, display, IGNORED_INACTIVE, product_id=candidate.id)
                product = await self._write_product_link(candidate, detail.id)
                outcome = LINKED_BY_SKU

        if product is not None and not product.is_active:
            return GroupResult(detail.id, display, IGNORED_INACTIVE, product_id=product.id)

        is_new = False
        if product is None:
            if not policy.import_new_products:
                return GroupResult(detail.id, display, SKIPPED_IMPORT_DISABLED, error="new product import is disabled")
            product = await self._create_product(group, detail)
            if product is None:
                # lost an insert race; the winner's row is now linked
                product = await self._product_by_external(detail.id)
                if product is None:
                    return GroupResult(detail.id, display, ERROR, error="insert conflict while creating product")
                if not product.is_active:
                    return GroupResult(detail.id, display, IGNORED_INACTIVE, product_id=product.id)
            else:
                is_new = True
                outcome = IMPORTED

        if not is_new:
            await self._apply_policy_updates(product, detail, policy)

        variant_count = await self._reconcile_variants(product, detail, group, policy, is_new)

        product.erp_sync_status = "synced"
        product.erp_last_synced_at = utcnow()
        product.erp_last_error = None
        await self.session.commit()
        self.categories.committed()

        logger.info("[SYNC] %s %s → product %s (%d variants)", outcome, detail.id, product.id, variant_count)
        return GroupResult(detail.id, product.name, outcome, product_id=product.id, variant_count=variant_count)

    # ------------------------------------------------------------------
    # product resolution
    # ------------------------------------------------------------------

    async def _find_sku_candidate(self, detail: ErpProductDetail) -> Optional[Product]:
        """Local product owning a variant (or product row) with one of the record's SKUs."""
        skus = [s for s in [detail.codigo, *[v.codigo for v in detail.variacoes]] if s]
        for sku in skus:
            for variant in await self._variants_by_sku(sku):
                product = await self.session.get(Product, variant.product_id, populate_existing=True)
                if product is not None and product.external_product_id in (None, detail.id):
                    return product
            stmt = select(Product).where(Product.sku == sku, Product.external_product_id.is_(None)).order_by(Product.id)
            product = (await self.session.execute(stmt)).scalars().first()
            if product is not None:
                return product
        return None

    async def _write_product_link(self, product: Product, external_id: int) -> Optional[Product]:
        """One-time link, committed on its own. A unique-constraint loss adopts the winner."""
        if product.external_product_id == external_id:
            return product
        product.external_product_id = external_id
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            logger.info("[SYNC] link race on external id %s; adopting existing row", external_id)
            return await self._product_by_external(external_id)
        logger.info("[SYNC] linked product %s to external id %s by SKU", product.id, external_id)
        return product

    async def _create_product(self, group: ProductGroup, detail: ErpProductDetail) -> Optional[Product]:
        # a cluster resolved through one of its children is named after the cluster
        from_child = any(v.external_id == detail.id for v in group.variation_items)
        values = first_import_fields(detail, name_override=group.base_name if from_child else None)
        values.update({k: v for k, v in syncable_fields(detail).items() if v is not None})

        product = Product(
            **values,
            slug=await unique_slug(self.session, Product, values["name"]),
            category_id=await self.categories.resolve(detail.category_id),
            external_product_id=detail.id,
        )
        self.session.add(product)
        try:
            await self.session.flush()
        except IntegrityError:
            await self.session.rollback()
            self.categories.rolled_back()
            return None

        for idx, (name, value) in enumerate(characteristics(detail)):
            self.session.add(ProductCharacteristic(product_id=product.id, name=name, value=value, display_order=idx))

        await replace_product_images(self.session, self.erp, self.blobs, product.id, detail.image_urls(), alt_text=product.name)
        return product

    async def _apply_policy_updates(self, product: Product, detail: ErpProductDetail, policy: SyncPolicy) -> None:
        changes = policy_update_fields(detail, policy)
        for col, val in changes.items():
            if getattr(product, col) != val:
                setattr(product, col, val)
        if policy.sync_images:
            await replace_product_images(self.session, self.erp, self.blobs, product.id, detail.image_urls(), alt_text=product.name)

    # ------------------------------------------------------------------
    # variants
    # ------------------------------------------------------------------

    def _erp_variants(self, detail: ErpProductDetail, group: ProductGroup) -> List[_ErpVariantSpec]:
        specs: List[_ErpVariantSpec] = []
        seen: Set[int] = set()
        for v in detail.variacoes:
            if v.id in seen:
                continue
            seen.add(v.id)
            specs.append(_ErpVariantSpec(
                external_id=v.id,
                name=v.nome,
                sku=v.codigo or None,
                active=(v.situacao or "A") == "A",
                attrs=extract_attributes(v.nome, v.structured_attributes()),
                price=v.preco,
            ))
        # listing items the detail did not return
        for item in group.variation_items:
            if item.external_id in seen or item.external_id == detail.id:
                continue
            seen.add(item.external_id)
            specs.append(_ErpVariantSpec(
                external_id=item.external_id,
                name=item.raw_name,
                sku=item.sku,
                active=True,
                attrs=extract_attributes(item.raw_name),
            ))
        return specs

    async def _fetch_stock(self, ids: Iterable[int]) -> Dict[int, int]:
        ids = [i for i in ids if i]
        if not ids:
            return {}
        try:
            return await self.erp.get_stock_balances(ids)
        except ErpApiError as e:
            # stock stays as-is; the batch reconciler catches up later
            logger.warning("[STOCK] balance fetch failed for %d id(s): %s", len(ids), e)
            return {}

    async def _reconcile_variants(
        self,
        product: Product,
        detail: ErpProductDetail,
        group: ProductGroup,
        policy: SyncPolicy,
        is_new: bool,
    ) -> int:
        specs = self._erp_variants(detail, group)
        want_stock = is_new or policy.sync_stock
        stock = await self._fetch_stock([s.external_id for s in specs] or [detail.id]) if want_stock else {}

        local = await self._variants_of(product.id)
        by_sku = {v.sku: v for v in local if v.sku and v.external_variant_id is None}
        touched: Set[int] = set()

        for spec in specs:
            variant = await self._variant_by_external(spec.external_id)
            if variant is not None and variant.product_id != product.id:
                logger.warning(
                    "[SYNC] external variant %s already belongs to product %s; skipping",
                    spec.external_id, variant.product_id,
                )
                continue

            if variant is None and policy.merge_by_sku and spec.sku and spec.sku in by_sku:
                variant = by_sku.pop(spec.sku)
                variant.external_variant_id = spec.external_id
                logger.info("[SYNC] variant %s linked to external id %s by SKU", variant.id, spec.external_id)

            if variant is None:
                variant = ProductVariant(
                    product_id=product.id,
                    size=spec.attrs.size,
                    color=spec.attrs.color,
                    color_hex=spec.attrs.color_hex,
                    stock_quantity=stock.get(spec.external_id, 0),
                    sku=spec.sku,
                    external_variant_id=spec.external_id,
                    is_active=spec.active,
                    price_modifier=_price_modifier(spec.price, product.base_price),
                )
                self.session.add(variant)
                await self.session.flush()
            else:
                if policy.sync_stock and spec.external_id in stock:
                    variant.stock_quantity = stock[spec.external_id]
                if policy.sync_variant_active:
                    variant.is_active = spec.active
            touched.add(variant.id)

        # stale links: linked locally but gone from the ERP record
        stale = [v for v in local if v.external_variant_id is not None and v.id not in touched]
        for v in stale:
            logger.info("[SYNC] removing stale variant %s (external %s)", v.id, v.external_variant_id)
            await self.session.delete(v)
        await self.session.flush()

        remaining = await self._variants_of(product.id)
        if not specs:
            qty = stock.get(detail.id)
            defaults = [v for v in remaining if v.external_variant_id is None]
            if policy.sync_stock and qty is not None:
                for v in defaults:
                    v.stock_quantity = qty
        if not remaining:
            self.session.add(ProductVariant(
                product_id=product.id,
                size=SIZE_SENTINEL,
                stock_quantity=stock.get(detail.id, 0) if not specs else 0,
                sku=detail.codigo or None,
                is_active=True,
            ))
            await self.session.flush()
            remaining = await self._variants_of(product.id)
        return len(remaining)

    # ------------------------------------------------------------------
    # single product (webhook product events)
    # ------------------------------------------------------------------

    async def sync_single_product(self, external_id: int, policy: SyncPolicy) -> GroupResult:
        """
        Refetch one product and apply only the safe field subset (prices,
        weight) plus stock. Unknown ids go through a normal group import.
        """
        product = await self._product_by_external(external_id)
        if product is None:
            variant = await self._variant_by_external(external_id)
            if variant is not None:
                if not policy.sync_stock:
                    return GroupResult(external_id, "", SKIPPED_SYNC_DISABLED, product_id=variant.product_id)
                res = await self.update_stock(external_id)
                outcome = IGNORED_INACTIVE if res.ignored_inactive else UPDATED
                return GroupResult(external_id, "", outcome, product_id=variant.product_id)
            if not policy.import_new_products:
                return GroupResult(external_id, "", NOT_FOUND, error="product not linked locally")
            return await self.reconcile_group(ProductGroup(parent_external_id=external_id), policy)

        if not product.is_active:
            return GroupResult(external_id, product.name, IGNORED_INACTIVE, product_id=product.id)

        try:
            detail = await self.erp.get_product(external_id)
            for col, val in webhook_safe_fields(detail).items():
                if val is None and col != "sale_price":
                    continue
                setattr(product, col, val)
            count = await self._reconcile_variants(product, detail, ProductGroup(parent_external_id=external_id), policy.stock_only(), False)
            product.erp_sync_status = "synced"
            product.erp_last_synced_at = utcnow()
            product.erp_last_error = None
            await self.session.commit()
        except Exception as e:
            await self.session.rollback()
            await self._stamp_error(external_id, str(e))
            raise
        return GroupResult(external_id, product.name, UPDATED, product_id=product.id, variant_count=count)

    async def deactivate_product(self, external_id: int) -> Optional[int]:
        """Soft delete from the ERP: product and every variant inactive."""
        product = await self._product_by_external(external_id)
        if product is None:
            return None
        product.is_active = False
        product.erp_sync_status = "deleted"
        product.erp_last_synced_at = utcnow()
        for v in await self._variants_of(product.id):
            v.is_active = False
        await self.session.commit()
        logger.info("[SYNC] product %s soft-deleted (external %s)", product.id, external_id)
        return product.id

    # ------------------------------------------------------------------
    # stock primitives
    # ------------------------------------------------------------------

    async def apply_variant_stock(self, variant: ProductVariant, quantity: int, product: Optional[Product] = None) -> str:
        """
        Returns 'updated', 'unchanged', 'reactivated' or 'ignored_inactive'.
        Only products the sync itself soft-deleted may come back to life.
        """
        product = product or await self.session.get(Product, variant.product_id, populate_existing=True)
        if product is None:
            return "ignored_inactive"
        if not product.is_active:
            if product.erp_sync_status != "deleted" or quantity <= 0:
                return "ignored_inactive"
            product.is_active = True
            product.erp_sync_status = "synced"
            variant.is_active = True
            variant.stock_quantity = quantity
            logger.info("[STOCK] product %s reactivated (variant %s stock %d)", product.id, variant.id, quantity)
            return "reactivated"
        if variant.stock_quantity == quantity:
            return "unchanged"
        variant.stock_quantity = quantity
        return "updated"

    async def resolve_stock_targets(self, external_id: int) -> tuple[Optional[str], List[ProductVariant]]:
        """
        external variant id → product default variant(s) → SKU fallback
        through the ERP detail (backfilling the missing link).
        """
        variant = await self._variant_by_external(external_id)
        if variant is not None:
            return "variant", [variant]

        product = await self._product_by_external(external_id)
        if product is not None:
            defaults = [v for v in await self._variants_of(product.id) if v.external_variant_id is None]
            return "product", defaults

        try:
            detail = await self.erp.get_product(external_id)
        except ErpApiError as e:
            logger.warning("[STOCK] SKU fallback for %s: detail fetch failed: %s", external_id, e)
            return None, []
        sku = detail.codigo
        if not sku:
            return None, []

        if detail.parent_id is not None:
            # a variation: link the local variant carrying that SKU (active products only)
            for v in await self._variants_by_sku(sku):
                if v.external_variant_id is not None:
                    continue
                owner = await self.session.get(Product, v.product_id, populate_existing=True)
                if owner is None or not owner.is_active:
                    continue
                linked = await self._write_variant_link(v, external_id)
                return ("sku", [linked]) if linked is not None else (None, [])
            return None, []

        stmt = (
            select(Product)
            .where(Product.sku == sku, Product.external_product_id.is_(None), Product.is_active.is_(True))
            .order_by(Product.id)
        )
        owner = (await self.session.execute(stmt)).scalars().first()
        if owner is None:
            for v in await self._variants_by_sku(sku):
                candidate = await self.session.get(Product, v.product_id, populate_existing=True)
                if candidate is not None and candidate.is_active and candidate.external_product_id is None:
                    owner = candidate
                    break
        if owner is None:
            return None, []
        linked_product = await self._write_product_link(owner, external_id)
        if linked_product is None:
            return None, []
        defaults = [v for v in await self._variants_of(linked_product.id) if v.external_variant_id is None]
        return "sku", defaults

    async def _write_variant_link(self, variant: ProductVariant, external_id: int) -> Optional[ProductVariant]:
        variant.external_variant_id = external_id
        try:
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            return await self._variant_by_external(external_id)
        logger.info("[STOCK] variant %s linked to external id %s by SKU", variant.id, external_id)
        return variant

    async def update_stock(self, external_id: int, quantity: Optional[int] = None) -> StockResult:
        res = StockResult(external_id=external_id)
        via, targets = await self.resolve_stock_targets(external_id)
        res.resolved_via = via
        if not targets:
            return res
        if quantity is None:
            balances = await self.erp.get_stock_balances([external_id])
            if external_id not in balances:
                return res
            quantity = balances[external_id]

        for v in targets:
            outcome = await self.apply_variant_stock(v, int(quantity))
            res.variant_ids.append(v.id)
            if outcome == "ignored_inactive":
                res.ignored_inactive = True
            elif outcome in ("updated", "reactivated"):
                res.updated += 1
                res.reactivated = res.reactivated or outcome == "reactivated"
        await self.session.commit()
        return res

    # ------------------------------------------------------------------

    async def _stamp_error(self, external_id: int, message: str) -> None:
        product = await self._product_by_external(external_id)
        if product is None or not product.is_active:
            return
        product.erp_sync_status = "error"
        product.erp_last_error = message[:1000]
        await self.session.commit()


def _price_modifier(variant_price: Optional[float], base_price: Optional[float]) -> float:
    if not variant_price or not base_price:
        return 0.0
    return round(float(variant_price) - float(base_price), 2)


async def purge_products(session: AsyncSession, product_ids: List[int]) -> int:
    """Hard delete products with their images, variants and characteristics."""
    from catalog_sync.models.catalog import ProductImage

    if not product_ids:
        return 0
    await session.execute(delete(ProductImage).where(ProductImage.product_id.in_(product_ids)))
    await session.execute(delete(ProductVariant).where(ProductVariant.product_id.in_(product_ids)))
    await session.execute(delete(ProductCharacteristic).where(ProductCharacteristic.product_id.in_(product_ids)))
    await session.execute(delete(Product).where(Product.id.in_(product_ids)))
    await session.commit()
    return len(product_ids)
