#=======================================================================================
# catalog_sync/routes.py
# Operator / scheduler endpoints: the sync trigger and the sync policy.
#
# Everything here requires HTTP Basic (admin). Include with NO extra prefix:
#   from catalog_sync.routes import router as api_router
#   app.include_router(api_router)
#=======================================================================================

import json
import secrets
from typing import Any, Dict, Optional
import logging

from fastapi import APIRouter, Request, Depends, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.config import settings
from catalog_sync.db import get_session
from catalog_sync.erp.erp_client import get_erp_client
from catalog_sync.erp.errors import ErpApiError, ErpConfigError
from catalog_sync.storage.blob_store import get_blob_store
from catalog_sync.sync.policy import load_policy, update_policy, is_first_import_running
from catalog_sync.sync.product_sync import (
    run_sync_products,
    first_import,
    relink_variants,
    cleanup_variations,
    debug_product,
    repair_images,
)
from catalog_sync.sync.stock_sync import batch_stock_sync, sync_single_stock

logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/api", tags=["Sync API"])

# ---------------------------
# HTTP Basic for operators
# ---------------------------
security = HTTPBasic()

def verify_admin(credentials: HTTPBasicCredentials = Depends(security)):
    ok_user = secrets.compare_digest(credentials.username or "", settings.ADMIN_USER or "")
    ok_pass = secrets.compare_digest(credentials.password or "", settings.ADMIN_PASS or "")
    if not (ok_user and ok_pass):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Basic"},
        )

# ---------------------------
# Helpers
# ---------------------------
async def _safe_json(req: Request) -> Dict[str, Any]:
    """Empty or non-object bodies count as {}."""
    raw = (await req.body()).decode("utf-8", "ignore")
    if not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="Body must be JSON")
    return data if isinstance(data, dict) else {}

def _get_int(payload: Dict[str, Any], *keys: str, default: Optional[int] = None) -> Optional[int]:
    for k in keys:
        v = payload.get(k)
        if v in (None, ""):
            continue
        try:
            return int(v)
        except (TypeError, ValueError):
            raise HTTPException(status_code=400, detail=f"'{k}' must be an integer")
    return default

def _get_bool(payload: Dict[str, Any], *keys: str, default: bool = False) -> bool:
    for k in keys:
        if k in payload:
            return bool(payload.get(k))
    return default

SYNC_ACTIONS = (
    "sync_products",
    "first_import",
    "sync_stock",
    "cron_stock_sync",
    "relink_variants",
    "cleanup_variations",
    "debug_product",
    "sync_single_stock",
    "repair_images",
)

# ---------------------------
# Sync trigger
# ---------------------------
@router.post("/sync", dependencies=[Depends(verify_admin)])
async def sync_trigger(
    request: Request,
    session: AsyncSession = Depends(get_session),
    erp=Depends(get_erp_client),
    blobs=Depends(get_blob_store),
):
    """
    Body: {"action": ..., "offset": 0, "limit": 5, "new_only": false,
           "external_id": 123, "product_id": 7, "dry_run": false}
    """
    payload = await _safe_json(request)
    action = str(payload.get("action") or "sync_products").strip()
    if action not in SYNC_ACTIONS:
        raise HTTPException(status_code=400, detail=f"Unknown action '{action}'. Expected one of {list(SYNC_ACTIONS)}")

    offset = max(_get_int(payload, "offset", default=0) or 0, 0)
    limit = _get_int(payload, "limit")
    logger.info("[SYNC] trigger action=%s offset=%s limit=%s", action, offset, limit)

    try:
        if action == "sync_products":
            return await run_sync_products(
                session, erp, blobs, offset=offset, limit=limit,
                new_only=_get_bool(payload, "new_only", "newOnly"),
            )
        if action == "first_import":
            return await first_import(session, erp, blobs, offset=offset, limit=limit)
        if action in ("sync_stock", "cron_stock_sync"):
            return await batch_stock_sync(session, erp, trigger=action)
        if action == "relink_variants":
            return await relink_variants(session, erp, offset=offset, limit=limit)
        if action == "cleanup_variations":
            return await cleanup_variations(session, erp)
        if action == "debug_product":
            ext_id = _get_int(payload, "external_id", "externalId", "bling_id")
            if ext_id is None:
                raise HTTPException(status_code=400, detail="'external_id' is required")
            return await debug_product(session, erp, ext_id)
        if action == "sync_single_stock":
            product_id = _get_int(payload, "product_id", "productId")
            if product_id is None:
                raise HTTPException(status_code=400, detail="'product_id' is required")
            return await sync_single_stock(session, erp, product_id)
        # repair_images
        return await repair_images(
            session, erp, blobs,
            dry_run=_get_bool(payload, "dry_run", "dryRun"),
            limit=_get_int(payload, "limit", default=50) or 50,
        )
    except ErpConfigError as e:
        logger.error("[SYNC] %s aborted: %s", action, e)
        return JSONResponse(status_code=400, content={"error": str(e)})
    except ErpApiError as e:
        # listing or lookup failed outside the per-group loop
        logger.warning("[SYNC] %s: ERP call failed: %s", action, e)
        return JSONResponse(status_code=502, content={"error": str(e), "status": e.status_code})

# ---------------------------
# Sync policy
# ---------------------------
@router.get("/sync/policy", dependencies=[Depends(verify_admin)])
async def get_policy(session: AsyncSession = Depends(get_session)):
    policy = await load_policy(session)
    await session.commit()
    return {"policy": policy.as_dict(), "firstImportRunning": await is_first_import_running(session)}

@router.put("/sync/policy", dependencies=[Depends(verify_admin)])
async def put_policy(request: Request, session: AsyncSession = Depends(get_session)):
    """Partial update; accepts snake_case or camelCase flag names. Unknown keys are ignored."""
    payload = await _safe_json(request)
    policy = await update_policy(session, payload)
    return {"policy": policy.as_dict()}

@router.get("/health")
async def health():
    return {"status": "ok"}
