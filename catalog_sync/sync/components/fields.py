# catalog_sync/sync/components/fields.py
# ---------------------------------------------------------
# Which canonical product fields come from which ERP fields,
# and which policy flag guards each of them.
# ---------------------------------------------------------
from __future__ import annotations

from typing import Any, Dict

from catalog_sync.erp.erp_models import ErpProductDetail
from catalog_sync.sync.components.util import strip_html

SYNCABLE_FIELDS = ("sku", "gtin", "weight", "width", "height", "depth")
FIRST_IMPORT_FIELDS = ("name", "description", "base_price", "sale_price", "brand", "condition", "is_active")
WEBHOOK_SAFE_FIELDS = ("base_price", "sale_price", "weight")

# policy flag → product columns it allows to overwrite on an existing product
FLAG_FIELDS: Dict[str, tuple] = {
    "sync_titles": ("name",),
    "sync_descriptions": ("description",),
    "sync_prices": ("base_price", "sale_price"),
    "sync_dimensions": ("weight", "width", "height", "depth"),
    "sync_sku_gtin": ("sku", "gtin"),
}

_CONDITIONS = {0: "new", 1: "refurbished"}


def _positive(v) -> float | None:
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    return f if f > 0 else None


def syncable_fields(d: ErpProductDetail) -> Dict[str, Any]:
    return {
        "sku": (d.codigo or None),
        "gtin": (d.gtin or None),
        "weight": _positive(d.pesoBruto) or _positive(d.pesoLiquido),
        "width": _positive(d.larguraProduto),
        "height": _positive(d.alturaProduto),
        "depth": _positive(d.profundidadeProduto),
    }


def first_import_fields(d: ErpProductDetail, name_override: str | None = None) -> Dict[str, Any]:
    price = float(d.preco or 0)
    promo = _positive(d.precoPromocional)
    description = d.descricaoCurta or d.descricaoComplementar or d.observacoes
    condition = _CONDITIONS.get(d.condicao, "used")
    return {
        "name": (name_override or d.nome or "").strip() or f"Produto {d.id}",
        "description": strip_html(description) or None,
        "base_price": price,
        "sale_price": promo if promo is not None and promo < price else None,
        "brand": d.brand_name,
        "condition": condition,
        "is_active": d.is_active,
    }


def webhook_safe_fields(d: ErpProductDetail) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    # no price on the record: leave both local prices alone
    if d.preco is not None:
        full = first_import_fields(d)
        out.update({k: full[k] for k in ("base_price", "sale_price")})
    out["weight"] = syncable_fields(d)["weight"]
    return out


def policy_update_fields(d: ErpProductDetail, policy) -> Dict[str, Any]:
    """Columns an existing product may receive under `policy`. Never is_active/slug/category."""
    full = {**first_import_fields(d), **syncable_fields(d)}
    if d.preco is None:
        full.pop("base_price")
        full.pop("sale_price")
    out: Dict[str, Any] = {}
    for flag, columns in FLAG_FIELDS.items():
        if not getattr(policy, flag, False):
            continue
        for col in columns:
            if col not in full:
                continue
            val = full[col]
            # an empty ERP value never blanks a local one (sale_price may clear)
            if val is None and col != "sale_price":
                continue
            out[col] = val
    return out


def characteristics(d: ErpProductDetail) -> list[tuple[str, str]]:
    """(name, value) rows written on first import: brand then custom fields."""
    rows: list[tuple[str, str]] = []
    if d.brand_name:
        rows.append(("Marca", d.brand_name))
    for c in d.camposCustomizados:
        if c.nome and c.valor and str(c.nome).strip() and str(c.valor).strip():
            rows.append((str(c.nome).strip(), str(c.valor).strip()))
    return rows
