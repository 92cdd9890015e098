# catalog_sync/erp/erp_attributes.py
# --------------------------------------------------------------------------------------
# Infers size / color (and any other key:value attribute) for one ERP item.
#
# Resolution order, per attribute:
#   1) structured pairs attached by the ERP (atributos / variacao.nome)
#   2) "key: value; key: value" tokens embedded in the item name
#   3) pattern rules on the bare name (shoe sizes, letter sizes, "Tam 38")
#   4) longest-first scan of the color keyword table
# No size found → "Único". Pure functions, no I/O.
# --------------------------------------------------------------------------------------

from __future__ import annotations

import hashlib
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple, Union

SIZE_SENTINEL = "Único"

SHOE_SIZE_MIN = 16
SHOE_SIZE_MAX = 48

LETTER_SIZES = {
    "PP", "P", "M", "G", "GG", "XG", "XGG", "EG", "EGG",
    "G1", "G2", "G3", "G4",
    "XS", "S", "L", "XL", "XXL",
}

SIZE_KEYS = {"tamanho", "tam", "tam.", "numero", "numeracao", "size", "tamanhos"}
COLOR_KEYS = {"cor", "cores", "color", "colour"}

# normalized keyword → (display name, hex)
COLOR_TABLE: Dict[str, Tuple[str, str]] = {
    "preto": ("Preto", "#000000"),
    "branco": ("Branco", "#FFFFFF"),
    "off white": ("Off White", "#FAF9F6"),
    "offwhite": ("Off White", "#FAF9F6"),
    "vermelho": ("Vermelho", "#FF0000"),
    "vinho": ("Vinho", "#722F37"),
    "bordo": ("Bordô", "#800020"),
    "azul": ("Azul", "#0000FF"),
    "azul marinho": ("Azul Marinho", "#000080"),
    "marinho": ("Marinho", "#000080"),
    "azul claro": ("Azul Claro", "#ADD8E6"),
    "azul royal": ("Azul Royal", "#4169E1"),
    "jeans": ("Jeans", "#5D8AA8"),
    "verde": ("Verde", "#008000"),
    "verde militar": ("Verde Militar", "#4B5320"),
    "verde agua": ("Verde Água", "#8FD8C3"),
    "amarelo": ("Amarelo", "#FFFF00"),
    "mostarda": ("Mostarda", "#FFDB58"),
    "laranja": ("Laranja", "#FFA500"),
    "coral": ("Coral", "#FF7F50"),
    "rosa": ("Rosa", "#FFC0CB"),
    "rosa claro": ("Rosa Claro", "#FFD1DC"),
    "pink": ("Pink", "#FF69B4"),
    "fucsia": ("Fúcsia", "#FF00FF"),
    "roxo": ("Roxo", "#800080"),
    "lilas": ("Lilás", "#C8A2C8"),
    "marrom": ("Marrom", "#8B4513"),
    "chocolate": ("Chocolate", "#7B3F00"),
    "caramelo": ("Caramelo", "#C68E17"),
    "camel": ("Camel", "#C19A6B"),
    "bege": ("Bege", "#F5F5DC"),
    "nude": ("Nude", "#E3BC9A"),
    "areia": ("Areia", "#C2B280"),
    "creme": ("Creme", "#FFFDD0"),
    "champagne": ("Champagne", "#F7E7CE"),
    "terracota": ("Terracota", "#E2725B"),
    "cinza": ("Cinza", "#808080"),
    "grafite": ("Grafite", "#383838"),
    "chumbo": ("Chumbo", "#4A4A4A"),
    "prata": ("Prata", "#C0C0C0"),
    "dourado": ("Dourado", "#FFD700"),
    "ouro": ("Ouro", "#FFD700"),
    "cobre": ("Cobre", "#B87333"),
    "bronze": ("Bronze", "#CD7F32"),
    "turquesa": ("Turquesa", "#40E0D0"),
}

# longest keyword first so "azul marinho" wins over "azul"
_COLOR_KEYWORDS: List[str] = sorted(COLOR_TABLE, key=lambda k: (-len(k), k))

_PAREN_ID_RE = re.compile(r"\(\s*\d+\s*\)")
_PAIR_RE = re.compile(
    r"([^\W\d_]+\.?)\s*:\s*(.+?)\s*(?=\s[^\W\d_]+\.?\s*:|[;|]|$)"
)
_PREFIX_SIZE_RE = re.compile(
    r"(?<![^\W\d_])(?:tamanho|tam\.?|numero|numeracao|size)(?![^\W\d_])\s*:?\s*(\d{1,2}|[a-z]{1,3}\d?)(?![^\W_])",
    re.IGNORECASE,
)
_NUMBER_RE = re.compile(r"(?<![\w.,/])(\d{2})(?![\w.,/%])")
_TOKEN_RE = re.compile(r"[^\W_]+")

PairsInput = Union[None, Dict[str, str], Iterable[Tuple[str, str]]]


@dataclass(frozen=True)
class VariantAttributes:
    size: str = SIZE_SENTINEL
    color: Optional[str] = None
    color_hex: Optional[str] = None
    extras: Dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {"size": self.size, "color": self.color, "colorHex": self.color_hex, "extras": dict(self.extras)}


def strip_accents(text: str) -> str:
    nfkd = unicodedata.normalize("NFKD", text or "")
    return "".join(ch for ch in nfkd if not unicodedata.combining(ch))


def normalize_text(text: str) -> str:
    """Lower-case, accent-free, single-spaced."""
    return re.sub(r"\s+", " ", strip_accents(text).lower()).strip()


def parse_attribute_pairs(text: str) -> List[Tuple[str, str]]:
    """
    'Cor: Preto; Tamanho: 38' → [('Cor', 'Preto'), ('Tamanho', '38')]
    Also accepts '|' separators and pairs glued to a product name.
    """
    if not text or ":" not in text:
        return []
    out: List[Tuple[str, str]] = []
    for m in _PAIR_RE.finditer(text):
        key, value = m.group(1).strip(), m.group(2).strip(" ;|,-")
        if key and value:
            out.append((key, value))
    return out


def _as_pairs(structured: PairsInput) -> List[Tuple[str, str]]:
    if not structured:
        return []
    if isinstance(structured, dict):
        items = structured.items()
    else:
        items = structured
    return [(str(k).strip(), str(v).strip()) for k, v in items if k and v is not None and str(v).strip()]


def _key_kind(key: str) -> Optional[str]:
    k = normalize_text(key)
    if k in SIZE_KEYS:
        return "size"
    if k in COLOR_KEYS:
        return "color"
    return None


def _normalize_size(value: str) -> str:
    v = value.strip()
    if v.upper() in LETTER_SIZES:
        return v.upper()
    return v


def _scan_pairs(pairs: List[Tuple[str, str]]) -> Tuple[Optional[str], Optional[str], Dict[str, str]]:
    size = color = None
    extras: Dict[str, str] = {}
    for key, value in pairs:
        kind = _key_kind(key)
        if kind == "size":
            size = size or _normalize_size(value)
        elif kind == "color":
            color = color or value.strip()
        else:
            extras.setdefault(key, value)
    return size, color, extras


def size_from_name(name: str) -> Optional[str]:
    """Pattern rules on the bare name; the last matching token wins."""
    text = strip_accents(_PAREN_ID_RE.sub(" ", name or ""))

    prefixed = [p for p in _PREFIX_SIZE_RE.findall(text) if p.isdigit() or p.upper() in LETTER_SIZES]
    if prefixed:
        return _normalize_size(prefixed[-1])

    numeric = [n for n in _NUMBER_RE.findall(text) if SHOE_SIZE_MIN <= int(n) <= SHOE_SIZE_MAX]
    if numeric:
        return numeric[-1]

    letter = None
    for tok in _TOKEN_RE.findall(text):
        up = tok.upper()
        if up not in LETTER_SIZES:
            continue
        # single letters are too ambiguous unless written upper-case
        if len(tok) == 1 and tok != up:
            continue
        letter = up
    return letter


def color_from_name(name: str) -> Optional[str]:
    text = normalize_text(_PAREN_ID_RE.sub(" ", name or ""))
    for kw in _COLOR_KEYWORDS:
        if re.search(rf"(?<![a-z0-9]){re.escape(kw)}(?![a-z0-9])", text):
            return COLOR_TABLE[kw][0]
    return None


def derive_color_hex(color: str) -> str:
    """Stable hex for colors outside the table, each channel kept in 64..191."""
    digest = hashlib.sha1(normalize_text(color).encode("utf-8")).digest()
    r, g, b = (64 + digest[i] % 128 for i in range(3))
    return f"#{r:02X}{g:02X}{b:02X}"


def color_hex_for(color: Optional[str]) -> Optional[str]:
    if not color:
        return None
    norm = normalize_text(color)
    if norm in COLOR_TABLE:
        return COLOR_TABLE[norm][1]
    for kw in _COLOR_KEYWORDS:
        if re.search(rf"(?<![a-z0-9]){re.escape(kw)}(?![a-z0-9])", norm):
            return COLOR_TABLE[kw][1]
    return derive_color_hex(color)


def extract_attributes(name: str, structured: PairsInput = None) -> VariantAttributes:
    """
    Resolve size/color for one item. Structured pairs always beat anything
    parsed out of the name; each attribute takes the first stage that yields it.
    """
    s_size, s_color, s_extras = _scan_pairs(_as_pairs(structured))
    n_size, n_color, n_extras = _scan_pairs(parse_attribute_pairs(name))

    size = s_size or n_size or size_from_name(name) or SIZE_SENTINEL
    color = s_color or n_color or color_from_name(name)

    extras = dict(n_extras)
    extras.update(s_extras)
    return VariantAttributes(size=size, color=color, color_hex=color_hex_for(color), extras=extras)
