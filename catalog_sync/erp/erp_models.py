# catalog_sync/erp/erp_models.py
# Typed records for the ERP payloads (Bling v3 shapes).
from __future__ import annotations

from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ListingFormat(str, Enum):
    SIMPLE = "SIMPLE"
    VARIATION = "VARIATION"


class ExternalListingItem(BaseModel):
    external_id: int
    raw_name: str = ""
    sku: Optional[str] = None
    format: ListingFormat = ListingFormat.SIMPLE
    status: Optional[str] = None

    @classmethod
    def from_api(cls, row: dict) -> "ExternalListingItem":
        fmt = ListingFormat.VARIATION if str(row.get("formato") or "").upper() == "V" else ListingFormat.SIMPLE
        return cls(
            external_id=int(row["id"]),
            raw_name=str(row.get("nome") or ""),
            sku=(str(row["codigo"]) if row.get("codigo") else None),
            format=fmt,
            status=(str(row["situacao"]) if row.get("situacao") else None),
        )


class ErpAttribute(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    nome: Optional[str] = None
    valor: Optional[str] = None


class ErpRef(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    id: Optional[int] = None


class ErpVariationSpec(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    nome: Optional[str] = None  # "Cor:Preto;Tamanho:38"


class ErpVariation(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    id: int
    nome: str = ""
    codigo: Optional[str] = None
    preco: Optional[float] = None
    situacao: Optional[str] = None
    variacao: Optional[ErpVariationSpec] = None
    atributos: List[ErpAttribute] = Field(default_factory=list)

    def structured_attributes(self) -> list[tuple[str, str]]:
        """Key/value pairs from `atributos` plus the `variacao.nome` string."""
        pairs: list[tuple[str, str]] = []
        for a in self.atributos:
            if a.nome and a.valor:
                pairs.append((a.nome, a.valor))
        spec = (self.variacao.nome if self.variacao else None) or ""
        for chunk in spec.replace("|", ";").split(";"):
            if ":" in chunk:
                k, v = chunk.split(":", 1)
                if k.strip() and v.strip():
                    pairs.append((k.strip(), v.strip()))
        return pairs


class ErpImage(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    link: Optional[str] = None


class ErpImageSet(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    internas: List[ErpImage] = Field(default_factory=list)
    externas: List[ErpImage] = Field(default_factory=list)


class ErpMedia(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    imagens: Optional[ErpImageSet] = None


class ErpProductDetail(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    id: int
    nome: str = ""
    codigo: Optional[str] = None
    preco: Optional[float] = None
    precoPromocional: Optional[float] = None
    situacao: Optional[str] = None
    formato: Optional[str] = None
    descricaoCurta: Optional[str] = None
    descricaoComplementar: Optional[str] = None
    observacoes: Optional[str] = None
    marca: Any = None  # string or {"nome": ...}
    condicao: Optional[int] = None
    gtin: Optional[str] = None
    pesoBruto: Optional[float] = None
    pesoLiquido: Optional[float] = None
    larguraProduto: Optional[float] = None
    alturaProduto: Optional[float] = None
    profundidadeProduto: Optional[float] = None
    categoria: Optional[ErpRef] = None
    produtoPai: Optional[ErpRef] = None
    idProdutoPai: Optional[int] = None
    midia: Optional[ErpMedia] = None
    camposCustomizados: List[ErpAttribute] = Field(default_factory=list)
    variacoes: List[ErpVariation] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _blank_numbers(cls, data: Any) -> Any:
        # the API sends "" / 0 for unset numeric refs
        if isinstance(data, dict):
            for key in ("idProdutoPai", "condicao", "pesoBruto", "pesoLiquido", "preco", "precoPromocional"):
                if data.get(key) == "":
                    data[key] = None
            for key in ("produtoPai", "categoria"):
                if isinstance(data.get(key), dict) and not data[key].get("id"):
                    data[key] = None
        return data

    @property
    def parent_id(self) -> Optional[int]:
        """Id of the true parent when this record is itself a variation."""
        pid = (self.produtoPai.id if self.produtoPai else None) or self.idProdutoPai
        if pid and int(pid) != self.id:
            return int(pid)
        return None

    @property
    def brand_name(self) -> Optional[str]:
        m = self.marca
        if isinstance(m, dict):
            m = m.get("nome")
        return str(m).strip() if m and str(m).strip() else None

    @property
    def category_id(self) -> Optional[int]:
        return self.categoria.id if self.categoria and self.categoria.id else None

    @property
    def is_active(self) -> bool:
        return (self.situacao or "A") == "A"

    def image_urls(self) -> list[str]:
        if not self.midia or not self.midia.imagens:
            return []
        out: list[str] = []
        for img in list(self.midia.imagens.internas) + list(self.midia.imagens.externas):
            if img.link and img.link not in out:
                out.append(img.link)
        return out


class ErpStockBalance(BaseModel):
    product_id: int
    quantity: int = 0

    @classmethod
    def from_api(cls, row: dict) -> Optional["ErpStockBalance"]:
        pid = (row.get("produto") or {}).get("id")
        if not pid:
            return None
        qty = row.get("saldoVirtualTotal")
        if qty is None:
            qty = row.get("saldoFisicoTotal") or 0
        return cls(product_id=int(pid), quantity=int(float(qty)))


class ErpCategory(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    id: int
    descricao: str = ""
