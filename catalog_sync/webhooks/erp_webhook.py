# catalog_sync/webhooks/erp_webhook.py
import hashlib, hmac, json, logging, time
from typing import Any, Optional

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.config import settings
from catalog_sync.db import get_session
from catalog_sync.erp.erp_client import get_erp_client
from catalog_sync.erp.errors import ErpConfigError, WebhookSignatureError
from catalog_sync.models.webhooks import WebhookEvent, WebhookLog
from catalog_sync.sync.components.util import utcnow
from catalog_sync.sync.stock_sync import batch_stock_sync
from catalog_sync.webhooks.handlers import WebhookDispatcher, classify_event, external_product_id
from catalog_sync.webhooks.webhook_models import ErpWebhookPayload


logger = logging.getLogger("uvicorn.error")

router = APIRouter(prefix="/webhooks/erp", tags=["ERP Webhooks"])

SIGNATURE_HEADER = "X-Signature-256"
CRON_ACTION = "cron_stock_sync"


def _redact(headers: dict[str, str]) -> dict[str, str]:
    out: dict[str, str] = {}
    for k, v in headers.items():
        out[k] = "<redacted>" if k.lower() in (SIGNATURE_HEADER.lower(), "authorization") else v
    return out


def sign_body(secret: str, body: bytes) -> str:
    """Header value a provider would send: "sha256=<hex>"."""
    return "sha256=" + _hex_hmac_sha256(secret, body)


def _hex_hmac_sha256(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, received: Optional[str], secret: str, require_secret: bool = False) -> None:
    """
    Raise WebhookSignatureError unless `received` ("sha256=<hex>") matches the
    HMAC-SHA256 of the raw body. No secret configured means no check, unless
    `require_secret` turns that into a rejection.
    """
    if not secret:
        if require_secret:
            raise WebhookSignatureError("secret_not_configured")
        return
    if not received:
        raise WebhookSignatureError("missing_signature")
    sig = received.strip()
    if sig.lower().startswith("sha256="):
        sig = sig[len("sha256="):]
    if not hmac.compare_digest(sig.lower(), _hex_hmac_sha256(secret, body)):
        raise WebhookSignatureError("invalid_signature")


def ledger_key(payload: ErpWebhookPayload, body: bytes) -> str:
    """Provider event id, else a digest of the raw body."""
    if payload.event_id:
        return payload.event_id[:128]
    return "sha256:" + hashlib.sha256(body).hexdigest()


async def _log_delivery(
    session: AsyncSession,
    started: float,
    result: str,
    status_code: int,
    *,
    event_id: Optional[str] = None,
    event_type: Optional[str] = None,
    external_id: Optional[int] = None,
    reason: Optional[str] = None,
) -> None:
    session.add(WebhookLog(
        event_id=event_id,
        event_type=event_type,
        external_product_id=external_id,
        result=result,
        reason=(reason or "")[:1000] or None,
        status_code=status_code,
        processing_time_ms=int((time.monotonic() - started) * 1000),
    ))
    try:
        await session.commit()
    except SQLAlchemyError as e:
        # the delivery itself already has its outcome; losing a log row is not fatal
        await session.rollback()
        logger.warning("[WEBHOOK] could not write delivery log: %s", e)


async def _reply(session, started, status_code: int, content: dict, result: str, **log) -> JSONResponse:
    await _log_delivery(session, started, result, status_code, **log)
    return JSONResponse(status_code=status_code, content=content)


async def process_webhook(
    session: AsyncSession,
    erp,
    body: bytes,
    signature: Optional[str] = None,
    query_action: Optional[str] = None,
) -> JSONResponse:
    """Verify → (cron?) → parse → ledger insert → dispatch → terminal status."""
    started = time.monotonic()

    # 1) Signature before anything else
    try:
        verify_signature(body, signature, settings.ERP_WEBHOOK_SECRET, settings.ERP_WEBHOOK_REQUIRE_SECRET)
    except WebhookSignatureError as e:
        logger.warning("[WEBHOOK] rejected: %s", e.reason)
        return await _reply(session, started, 401, {"ok": False, "reason": e.reason}, "rejected", reason=e.reason)

    # 2) Parse
    try:
        raw: Any = json.loads(body or b"{}")
        if not isinstance(raw, dict):
            raise ValueError("payload must be a JSON object")
        payload = ErpWebhookPayload.model_validate(raw)
    except (ValueError, ValidationError) as e:
        logger.warning("[WEBHOOK] payload validation error: %s", e)
        return await _reply(session, started, 400, {"ok": False, "reason": "invalid_payload"}, "rejected", reason=str(e))

    # 3) Scheduler hook
    if query_action == CRON_ACTION or payload.action == CRON_ACTION:
        logger.info("[WEBHOOK] cron stock sync requested")
        try:
            summary = await batch_stock_sync(session, erp, trigger=CRON_ACTION)
        except ErpConfigError as e:
            return await _reply(session, started, 400, {"ok": False, "error": str(e)}, "failed", event_type="cron", reason=str(e))
        return await _reply(session, started, 200, {"ok": True, **summary}, "cron", event_type="cron")

    if not payload.retorno and not payload.event_name:
        return await _reply(session, started, 200, {"ok": True, "message": "No event"}, "ignored", reason="no_event")

    kind = "legacy" if payload.retorno else classify_event(payload.event_name)
    ext_id = None if payload.retorno else external_product_id(payload)
    key = ledger_key(payload, body)
    log = {"event_id": key, "event_type": kind, "external_id": ext_id}

    # 4) Idempotency: the unique event_id decides who processes
    event = WebhookEvent(event_id=key, event_type=kind, external_product_id=ext_id, payload=raw, status="processing")
    session.add(event)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        await session.execute(
            update(WebhookEvent).where(WebhookEvent.event_id == key).values(retries=WebhookEvent.retries + 1)
        )
        await session.commit()
        logger.info("[WEBHOOK] duplicate delivery %s acknowledged", key)
        return await _reply(session, started, 200, {"ok": True, "duplicate": True, "eventId": key}, "duplicate", **log)
    event_pk = event.id

    # 5) Dispatch; the ledger row always ends in a terminal status
    try:
        result = await WebhookDispatcher(session, erp).dispatch(payload)
        error = result.get("reason") if result.get("result") == "failed" else None
    except Exception as e:
        logger.error("[WEBHOOK] event %s (%s) failed", key, kind, exc_info=e)
        await session.rollback()
        result, error = {"result": "failed"}, str(e) or e.__class__.__name__

    row = await session.get(WebhookEvent, event_pk, populate_existing=True)
    row.status = "failed" if error else "processed"
    row.last_error = error[:2000] if error else None
    row.processed_at = utcnow()
    await session.commit()

    if error:
        return await _reply(session, started, 500, {"ok": False, "eventId": key, "error": error}, "failed", reason=error, **log)

    outcome = result.pop("result", "processed")
    content = {"ok": True, "eventId": key, "event": payload.event_name, "eventType": kind, **result}
    return await _reply(session, started, 200, content, outcome, reason=result.get("reason"), **log)


@router.post("")
@router.post("/")
async def erp_webhook(
    request: Request,
    session: AsyncSession = Depends(get_session),
    erp=Depends(get_erp_client),
) -> Response:
    if settings.ERP_WEBHOOK_DEBUG:
        logger.info("[WEBHOOK][DEBUG] incoming headers=%s", _redact(dict(request.headers)))

    # Read body ONCE; the signature covers the raw bytes
    body = await request.body()
    if settings.ERP_WEBHOOK_DEBUG:
        logger.info("[WEBHOOK][DEBUG] first_256_bytes=%r", body[:256])

    return await process_webhook(
        session,
        erp,
        body,
        signature=request.headers.get(SIGNATURE_HEADER),
        query_action=request.query_params.get("action"),
    )
