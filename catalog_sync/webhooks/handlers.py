# catalog_sync/webhooks/handlers.py
# Event classification + dispatch onto the reconciliation engine primitives.
from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.sync.engine import ERROR, ReconciliationEngine
from catalog_sync.sync.policy import SyncPolicy, load_policy
from catalog_sync.webhooks.webhook_models import ErpWebhookPayload

logger = logging.getLogger(__name__)

STOCK = "stock"
PRODUCT = "product"
ORDER = "order"
INVOICE = "invoice"
UNKNOWN = "unknown"

_DELETE_MARKERS = ("delete", "excluid", "removid")
_INVOICE_TOKENS = {"invoice", "invoices", "nf", "nfe", "nfce", "nota", "notafiscal"}


def classify_event(name: Optional[str]) -> str:
    e = (name or "").lower()
    if "stock" in e or "estoque" in e:
        return STOCK
    if "product" in e or "produto" in e:
        return PRODUCT
    if "order" in e or "pedido" in e or "venda" in e:
        return ORDER
    if _INVOICE_TOKENS & set(re.split(r"[^a-z0-9]+", e)):
        return INVOICE
    return UNKNOWN


def _as_int(v: Any) -> Optional[int]:
    try:
        return int(v) if v not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _nested_id(d: dict, key: str) -> Optional[int]:
    inner = d.get(key)
    return _as_int(inner.get("id")) if isinstance(inner, dict) else None


def stock_target(data: Dict[str, Any], legacy: bool = False) -> tuple[Optional[int], Optional[int]]:
    """(external id, quantity) of a stock event; quantity None means 'ask the ERP'."""
    ext_id = _nested_id(data, "produto") or _as_int(data.get("idProduto"))
    qty = data.get("saldoVirtualTotal")
    if qty is None and legacy:
        # V3 "quantidade" is the movement, not the balance
        qty = data.get("quantidade", data.get("saldo"))
    try:
        return ext_id, (int(float(qty)) if qty is not None else None)
    except (TypeError, ValueError):
        return ext_id, None


def product_target(data: Dict[str, Any]) -> Optional[int]:
    return _as_int(data.get("id")) or _as_int(data.get("idProduto")) or _nested_id(data, "produto")


def is_deletion(event_name: Optional[str], data: Dict[str, Any]) -> bool:
    e = (event_name or "").lower()
    if any(m in e for m in _DELETE_MARKERS):
        return True
    return str(data.get("situacao") or "").upper() == "E"


def external_product_id(payload: ErpWebhookPayload) -> Optional[int]:
    kind = classify_event(payload.event_name)
    if kind == STOCK:
        return stock_target(payload.body)[0]
    if kind == PRODUCT:
        return product_target(payload.body)
    return None


class WebhookDispatcher:
    """Routes one parsed event to the engine. Returns a small result dict."""

    def __init__(self, session: AsyncSession, erp):
        self.session = session
        self.engine = ReconciliationEngine(session, erp, blobs=None)

    async def handle_stock(self, data: Dict[str, Any], policy: SyncPolicy, legacy: bool = False) -> Dict[str, Any]:
        ext_id, qty = stock_target(data, legacy)
        if ext_id is None:
            return {"result": "ignored", "reason": "missing_product_id"}
        if not policy.sync_stock:
            return {"result": "ignored", "reason": "sync_disabled", "externalId": ext_id}
        res = await self.engine.update_stock(ext_id, qty)
        if not res.variant_ids:
            logger.info("[WEBHOOK] stock event for %s matched no local variant", ext_id)
            return {"result": "ignored", "reason": "not_linked", "externalId": ext_id}
        return {
            "result": "ignored" if res.ignored_inactive and not res.updated else "processed",
            "externalId": ext_id,
            "resolvedVia": res.resolved_via,
            "updated": res.updated,
            "reactivated": res.reactivated,
        }

    async def handle_product(self, event_name: Optional[str], data: Dict[str, Any], policy: SyncPolicy) -> Dict[str, Any]:
        ext_id = product_target(data)
        if ext_id is None:
            return {"result": "ignored", "reason": "missing_product_id"}
        if is_deletion(event_name, data):
            product_id = await self.engine.deactivate_product(ext_id)
            return {
                "result": "processed" if product_id is not None else "ignored",
                "action": "deactivated",
                "externalId": ext_id,
                "productId": product_id,
            }
        res = await self.engine.sync_single_product(ext_id, policy)
        if res.outcome == ERROR:
            return {"result": "failed", "reason": res.error or "sync_failed", "externalId": ext_id}
        return {"result": "processed", "action": "synced", "outcome": res.outcome, "externalId": ext_id, "productId": res.product_id}

    async def handle_legacy(self, retorno: Dict[str, Any], policy: SyncPolicy) -> Dict[str, Any]:
        """Old callback shape: {"retorno": {"estoques": [...], "produtos": [...]}}."""
        stocks = _as_list(retorno.get("estoques"))
        products = _as_list(retorno.get("produtos"))
        stock_done = product_done = 0
        for item in stocks:
            est = item.get("estoque", item) if isinstance(item, dict) else {}
            out = await self.handle_stock(est, policy, legacy=True)
            stock_done += out["result"] == "processed"
        for item in products:
            p = item.get("produto", item) if isinstance(item, dict) else {}
            out = await self.handle_product(None, p, policy)
            product_done += out["result"] == "processed"
        logger.info("[WEBHOOK] legacy callback: %d stock / %d product item(s)", len(stocks), len(products))
        return {"result": "processed", "stocks": stock_done, "products": product_done}

    async def dispatch(self, payload: ErpWebhookPayload) -> Dict[str, Any]:
        policy = await load_policy(self.session)
        if payload.retorno:
            return await self.handle_legacy(payload.retorno, policy)

        kind = classify_event(payload.event_name)
        if kind == STOCK:
            return await self.handle_stock(payload.body, policy)
        if kind == PRODUCT:
            return await self.handle_product(payload.event_name, payload.body, policy)
        # orders and invoices belong to other subsystems; acknowledge only
        logger.info("[WEBHOOK] %s event acknowledged: %s", kind, payload.event_name)
        return {"result": "ignored", "reason": f"{kind}_event"}


def _as_list(v: Any) -> List[Any]:
    if v is None:
        return []
    return v if isinstance(v, list) else [v]
