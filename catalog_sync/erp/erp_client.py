#===========================================================================
# catalog_sync/erp/erp_client.py
# ERP (Bling v3 style) API interface module.
# Rate-limited, retrying access to products, stock balances and categories,
# plus the OAuth token lifecycle backed by the erp_credentials table.
#===========================================================================

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

import httpx

from catalog_sync.config import settings
from catalog_sync.db import get_sessionmaker
from catalog_sync.erp.errors import ErpApiError, ErpConfigError
from catalog_sync.erp.erp_models import (
    ErpCategory,
    ErpProductDetail,
    ErpStockBalance,
    ExternalListingItem,
)
from catalog_sync.models.credentials import ErpCredentials

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 21600
MAX_STOCK_BATCH = 50


# --- Token lifecycle -------------------------------------------------------

class TokenManager:
    """
    Keeps the access token fresh. The pair lives in erp_credentials (id=1);
    an empty table is seeded from ERP_ACCESS_TOKEN / ERP_REFRESH_TOKEN.
    """

    def __init__(
        self,
        *,
        token_url: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        refresh_margin: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.token_url = token_url or settings.ERP_TOKEN_URL
        self.client_id = settings.ERP_CLIENT_ID if client_id is None else client_id
        self.client_secret = settings.ERP_CLIENT_SECRET if client_secret is None else client_secret
        self.refresh_margin = settings.ERP_TOKEN_REFRESH_MARGIN if refresh_margin is None else refresh_margin
        self._transport = transport
        self._clock = clock
        self._lock = asyncio.Lock()

    async def _load(self, session) -> ErpCredentials:
        creds = await session.get(ErpCredentials, 1, populate_existing=True)
        if creds is None:
            creds = ErpCredentials(
                id=1,
                access_token=settings.ERP_ACCESS_TOKEN or None,
                refresh_token=settings.ERP_REFRESH_TOKEN or None,
                expires_at=0,
            )
            session.add(creds)
            await session.commit()
        return creds

    async def get_token(self, force_refresh: bool = False) -> str:
        async with self._lock:
            async with get_sessionmaker()() as session:
                creds = await self._load(session)
                if not creds.access_token and not creds.refresh_token:
                    raise ErpConfigError("ERP integration not linked: no access or refresh token on file")

                now = int(self._clock())
                # expires_at == 0 means "unknown"; only a 401 will force a refresh then
                expiring = bool(creds.expires_at) and creds.expires_at - now <= self.refresh_margin
                if creds.access_token and not force_refresh and not expiring:
                    return creds.access_token

                await self._refresh(session, creds, now)
                return creds.access_token  # type: ignore[return-value]

    async def _refresh(self, session, creds: ErpCredentials, now: int) -> None:
        if not creds.refresh_token:
            raise ErpConfigError("ERP access token expired and no refresh token is stored")
        if not self.client_id or not self.client_secret:
            raise ErpConfigError("ERP_CLIENT_ID / ERP_CLIENT_SECRET are not configured")

        logger.info("[ERP] refreshing access token")
        try:
            async with httpx.AsyncClient(timeout=settings.ERP_TIMEOUT, transport=self._transport) as client:
                resp = await client.post(
                    self.token_url,
                    data={"grant_type": "refresh_token", "refresh_token": creds.refresh_token},
                    auth=(self.client_id, self.client_secret),
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as e:
            raise ErpConfigError(f"ERP token refresh failed: {e}") from e

        if resp.status_code != 200:
            raise ErpConfigError(f"ERP token refresh rejected (HTTP {resp.status_code})")
        data = resp.json()
        if not data.get("access_token"):
            raise ErpConfigError("ERP token refresh returned no access_token")

        creds.access_token = data["access_token"]
        creds.refresh_token = data.get("refresh_token") or creds.refresh_token
        creds.expires_at = now + int(data.get("expires_in") or DEFAULT_EXPIRES_IN)
        await session.commit()
        logger.info("[ERP] access token refreshed; expires in %ss", creds.expires_at - now)


class StaticTokenProvider:
    """Fixed bearer token (scripts, tests)."""

    def __init__(self, token: str):
        self.token = token
        self.refreshes = 0

    async def get_token(self, force_refresh: bool = False) -> str:
        if force_refresh:
            self.refreshes += 1
        return self.token


# --- Client ----------------------------------------------------------------

class ErpClient:
    def __init__(
        self,
        tokens,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        min_interval_ms: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_backoff: Optional[float] = None,
        page_size: Optional[int] = None,
        stock_batch_size: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.tokens = tokens
        self.base_url = (base_url or settings.ERP_API_URL).rstrip("/")
        self.timeout = settings.ERP_TIMEOUT if timeout is None else timeout
        interval_ms = settings.ERP_MIN_INTERVAL_MS if min_interval_ms is None else min_interval_ms
        self.min_interval = max(0, interval_ms) / 1000.0
        self.max_retries = settings.ERP_MAX_RETRIES if max_retries is None else max_retries
        self.retry_backoff = settings.ERP_RETRY_BACKOFF if retry_backoff is None else retry_backoff
        self.page_size = page_size or settings.ERP_PAGE_SIZE
        self.stock_batch_size = min(stock_batch_size or settings.ERP_STOCK_BATCH_SIZE, MAX_STOCK_BATCH)
        self._transport = transport
        self._sleep = sleep
        self._last_call: Optional[float] = None

    def _url(self, path: str) -> str:
        return path if path.startswith("http") else f"{self.base_url}{path if path.startswith('/') else '/' + path}"

    async def _throttle(self) -> None:
        if self._last_call is not None and self.min_interval > 0:
            wait = self.min_interval - (time.monotonic() - self._last_call)
            if wait > 0:
                await self._sleep(wait)
        self._last_call = time.monotonic()

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
    ) -> httpx.Response:
        """
        Raw call. 429 → linear backoff up to max_retries, then the last response
        is returned as-is. 401 → one forced token refresh and retry.
        Transport errors and timeouts raise ErpApiError.
        """
        url = self._url(path)
        refreshed = False
        force = False
        attempt = 0
        while True:
            await self._throttle()
            token = await self.tokens.get_token(force_refresh=force)
            force = False
            headers = {"Authorization": f"Bearer {token}", "Accept": "application/json"}
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                    resp = await client.request(method, url, params=params, json=json, headers=headers)
            except httpx.TimeoutException as e:
                logger.warning("[ERP] %s %s timed out", method, path)
                raise ErpApiError(f"{method} {path} timed out") from e
            except httpx.HTTPError as e:
                logger.warning("[ERP] %s %s transport error: %s", method, path, e)
                raise ErpApiError(f"{method} {path} failed: {e}") from e

            if resp.status_code == 401 and not refreshed:
                logger.info("[ERP] 401 on %s %s; forcing token refresh", method, path)
                refreshed = force = True
                continue

            if resp.status_code == 429 and attempt < self.max_retries:
                attempt += 1
                delay = self.retry_backoff * attempt
                logger.warning("[ERP] 429 on %s %s; retry %d/%d in %.1fs", method, path, attempt, self.max_retries, delay)
                await self._sleep(delay)
                continue

            return resp

    async def _data(self, method: str, path: str, what: str, params: Optional[Dict[str, Any]] = None) -> Any:
        resp = await self.request(method, path, params=params)
        if resp.status_code != 200:
            raise ErpApiError(f"{what} failed", resp.status_code, resp.text[:500])
        try:
            body = resp.json()
        except ValueError as e:
            raise ErpApiError(f"{what}: invalid JSON", resp.status_code, resp.text[:500]) from e
        return (body or {}).get("data")

    # ---- Products ----

    async def list_products(self, page: int, limit: Optional[int] = None) -> List[ExternalListingItem]:
        rows = await self._data(
            "GET", "/produtos", f"product listing page {page}",
            params={"pagina": page, "limite": limit or self.page_size},
        )
        return [ExternalListingItem.from_api(r) for r in (rows or []) if r.get("id")]

    async def list_all_products(self, max_pages: Optional[int] = None) -> List[ExternalListingItem]:
        """Walk the listing sequentially until an empty (or short) page."""
        out: List[ExternalListingItem] = []
        page = 1
        while True:
            batch = await self.list_products(page)
            if not batch:
                break
            out.extend(batch)
            if len(batch) < self.page_size:
                break
            if max_pages is not None and page >= max_pages:
                break
            page += 1
        logger.info("[ERP] listing fetched: %d items over %d page(s)", len(out), page)
        return out

    async def get_product(self, external_id: int) -> ErpProductDetail:
        data = await self._data("GET", f"/produtos/{int(external_id)}", f"product {external_id} detail")
        if not data:
            raise ErpApiError(f"product {external_id} detail is empty")
        return ErpProductDetail.model_validate(data)

    async def find_products_by_sku(self, sku: str) -> List[ExternalListingItem]:
        rows = await self._data("GET", "/produtos", f"SKU search {sku!r}", params={"codigo": sku})
        return [ExternalListingItem.from_api(r) for r in (rows or []) if r.get("id")]

    # ---- Stock ----

    async def get_stock_balances(self, external_ids: Iterable[int]) -> Dict[int, int]:
        """{external id: quantity}, fetched in batches of at most 50 ids."""
        ids: List[int] = []
        for i in external_ids:
            if i and int(i) not in ids:
                ids.append(int(i))
        out: Dict[int, int] = {}
        for start in range(0, len(ids), self.stock_batch_size):
            chunk = ids[start:start + self.stock_batch_size]
            rows = await self._data(
                "GET", "/estoques/saldos", f"stock batch of {len(chunk)}",
                params={"idsProdutos[]": chunk},
            )
            for row in rows or []:
                bal = ErpStockBalance.from_api(row)
                if bal is not None:
                    out[bal.product_id] = bal.quantity
        return out

    # ---- Categories ----

    async def get_category(self, category_id: int) -> Optional[ErpCategory]:
        resp = await self.request("GET", f"/categorias/produtos/{int(category_id)}")
        if resp.status_code == 404:
            return None
        if resp.status_code != 200:
            raise ErpApiError(f"category {category_id} failed", resp.status_code, resp.text[:500])
        data = (resp.json() or {}).get("data")
        return ErpCategory.model_validate(data) if data else None

    # ---- Media ----

    async def download(self, url: str) -> Tuple[bytes, str]:
        """Fetch an ERP-hosted image (signed URL, no bearer token)."""
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport, follow_redirects=True) as client:
                resp = await client.get(url)
        except httpx.HTTPError as e:
            raise ErpApiError(f"download failed: {e}") from e
        if resp.status_code != 200 or not resp.content:
            raise ErpApiError("download failed", resp.status_code)
        return resp.content, (resp.headers.get("content-type") or "").split(";")[0].strip().lower()


def build_erp_client() -> ErpClient:
    return ErpClient(TokenManager())


def get_erp_client() -> ErpClient:
    """FastAPI dependency; tests override it with a fake."""
    return build_erp_client()
