# catalog_sync/erp/erp_grouping.py
# --------------------------------------------------------------------------------------
# Partition the flat ERP listing into parent / variation clusters.
#
#   "Sandália Laura (501) Cor: Preto"  → variation of explicit parent 501
#   "Camiseta Basic Cor: Azul"         → same-name cluster "camiseta basic"
#   "Camiseta Basic"                   → becomes that cluster's parent
#   "Tênis Max"                        → standalone group
#
# Every listing item ends up in exactly one group (as parent or as a variation).
# --------------------------------------------------------------------------------------

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from catalog_sync.erp.erp_attributes import normalize_text
from catalog_sync.erp.erp_models import ExternalListingItem, ListingFormat

_PARENT_ID_RE = re.compile(r"^(.*?)\s*\((\d+)\)\s*(.*)$", re.DOTALL)
_ATTR_SUFFIX_RE = re.compile(
    r"(?<![^\W\d_])(?:cor|cores|tamanho|tam\.?|numero|número|size|color)\s*:",
    re.IGNORECASE,
)


@dataclass
class VariationItem:
    external_id: int
    base_name: str
    attribute_suffix: str
    raw_name: str = ""
    sku: Optional[str] = None


@dataclass
class ProductGroup:
    parent_external_id: int
    parent_list_item: Optional[ExternalListingItem] = None
    variation_items: List[VariationItem] = field(default_factory=list)
    is_simple: bool = False
    base_name: str = ""

    @property
    def display_name(self) -> str:
        if self.parent_list_item is not None:
            return self.parent_list_item.raw_name
        return self.base_name

    def member_ids(self) -> List[int]:
        ids = [v.external_id for v in self.variation_items]
        if self.parent_list_item is not None:
            ids.insert(0, self.parent_list_item.external_id)
        return ids


def parse_parent_suffix(raw_name: str) -> Optional[Tuple[str, int, str]]:
    """'<base> (<id>) <rest>' → (base, id, rest); None when there is no parent id."""
    m = _PARENT_ID_RE.match(raw_name or "")
    if not m:
        return None
    base = m.group(1).strip()
    if not base:
        return None
    return base, int(m.group(2)), m.group(3).strip()


def split_attribute_suffix(raw_name: str) -> Optional[Tuple[str, str]]:
    """'<base> Cor: Preto' → (base, 'Cor: Preto'); None when the name carries no attribute suffix."""
    m = _ATTR_SUFFIX_RE.search(raw_name or "")
    if not m or m.start() == 0:
        return None
    base = raw_name[: m.start()].strip(" -–|;,/")
    if not base:
        return None
    return base, raw_name[m.start():].strip()


def _group_key_name(name: str) -> str:
    return normalize_text(name)


def classify_listing(items: Iterable[ExternalListingItem]) -> List[ProductGroup]:
    """
    Build ProductGroups from the full listing. Duplicate ids keep their first
    occurrence. Output order follows the first appearance of each group.
    """
    unique: List[ExternalListingItem] = []
    seen: Set[int] = set()
    for it in items:
        if it.external_id in seen:
            continue
        seen.add(it.external_id)
        unique.append(it)

    explicit: Dict[int, ProductGroup] = {}
    clusters: Dict[str, ProductGroup] = {}
    # item id → group key, filled as items are classified
    placement: Dict[int, Tuple[str, object]] = {}

    # 1) explicit parent ids, 2) same-name attribute clusters
    for it in unique:
        parsed = parse_parent_suffix(it.raw_name)
        if parsed and parsed[1] != it.external_id:
            base, pid, rest = parsed
            grp = explicit.get(pid)
            if grp is None:
                grp = explicit[pid] = ProductGroup(parent_external_id=pid, base_name=base)
            grp.variation_items.append(
                VariationItem(it.external_id, base, rest, raw_name=it.raw_name, sku=it.sku)
            )
            placement[it.external_id] = ("p", pid)
            continue
        if parsed:
            # "<name> (<own id>)" is a parent, handled with the standalone items
            continue

        split = split_attribute_suffix(it.raw_name)
        if split:
            base, rest = split
            key = _group_key_name(base)
            grp = clusters.get(key)
            if grp is None:
                grp = clusters[key] = ProductGroup(parent_external_id=it.external_id, base_name=base)
            grp.variation_items.append(
                VariationItem(it.external_id, base, rest, raw_name=it.raw_name, sku=it.sku)
            )
            placement[it.external_id] = ("c", key)

    # 3) standalone items: explicit parent, cluster parent, or their own group
    simple: Dict[int, ProductGroup] = {}
    for it in unique:
        if it.external_id in placement:
            continue
        parsed = parse_parent_suffix(it.raw_name)
        own_name = parsed[0] if parsed else it.raw_name

        grp = explicit.get(it.external_id)
        if grp is not None and grp.parent_list_item is None:
            grp.parent_list_item = it
            placement[it.external_id] = ("p", it.external_id)
            continue

        key = _group_key_name(own_name)
        grp = clusters.get(key)
        if grp is not None and grp.parent_list_item is None:
            grp.parent_list_item = it
            grp.parent_external_id = it.external_id
            placement[it.external_id] = ("c", key)
            continue

        simple[it.external_id] = ProductGroup(
            parent_external_id=it.external_id,
            parent_list_item=it,
            is_simple=it.format == ListingFormat.SIMPLE,
            base_name=own_name,
        )
        placement[it.external_id] = ("s", it.external_id)

    out: List[ProductGroup] = []
    emitted: Set[Tuple[str, object]] = set()
    for it in unique:
        key = placement[it.external_id]
        if key in emitted:
            continue
        emitted.add(key)
        kind, ident = key
        if kind == "p":
            grp = explicit[ident]  # type: ignore[index]
        elif kind == "c":
            grp = clusters[ident]  # type: ignore[index]
        else:
            grp = simple[ident]  # type: ignore[index]
        if not grp.variation_items and grp.parent_list_item is None:
            continue
        out.append(grp)
    return out


def variation_external_ids(groups: Iterable[ProductGroup]) -> Set[int]:
    """Ids that were classified as variation items (they must never stand alone)."""
    ids: Set[int] = set()
    for g in groups:
        for v in g.variation_items:
            ids.add(v.external_id)
    return ids


def parent_external_ids(groups: Iterable[ProductGroup]) -> Set[int]:
    return {g.parent_external_id for g in groups}
