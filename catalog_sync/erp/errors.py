# catalog_sync/erp/errors.py
from __future__ import annotations


class ErpError(Exception):
    """Base class for everything raised while talking to the ERP."""


class ErpConfigError(ErpError):
    """Missing credentials, unlinked integration or a rejected token refresh."""


class ErpApiError(ErpError):
    def __init__(self, message: str, status_code: int | None = None, body: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is None:
            return base
        return f"{base} (HTTP {self.status_code})"


class WebhookSignatureError(Exception):
    def __init__(self, reason: str = "invalid_signature"):
        super().__init__(reason)
        self.reason = reason
