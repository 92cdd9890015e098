# catalog_sync/webhooks/webhook_models.py
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class ErpWebhookPayload(BaseModel):
    """
    Inbound ERP callback. Three shapes arrive on the same endpoint:
      V3:      {"event": "stock.updated", "eventId": "...", "data": {...}}
      legacy:  {"evento": "estoque", "dados": {...}}
      return:  {"retorno": {"estoques": [...]} | {"produtos": [...]}}
    plus the scheduler hook {"action": "cron_stock_sync"}.
    """
    model_config = ConfigDict(extra="allow", populate_by_name=True, coerce_numbers_to_str=True)

    event: Optional[str] = None
    evento: Optional[str] = None
    event_id: Optional[str] = Field(None, alias="eventId")
    data: Optional[dict[str, Any]] = None
    dados: Optional[dict[str, Any]] = None
    retorno: Optional[dict[str, Any]] = None
    action: Optional[str] = None

    @property
    def event_name(self) -> Optional[str]:
        return self.event or self.evento

    @property
    def body(self) -> dict[str, Any]:
        return self.data or self.dados or {}
