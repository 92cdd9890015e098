import json

import pytest
from fastapi.testclient import TestClient

from catalog_sync.config import settings
from catalog_sync.erp.erp_client import get_erp_client
from catalog_sync.erp.errors import WebhookSignatureError
from catalog_sync.main_app import app
from catalog_sync.models.catalog import Product, ProductVariant
from catalog_sync.models.webhooks import WebhookEvent, WebhookLog
from catalog_sync.webhooks.erp_webhook import process_webhook, sign_body, verify_signature
from catalog_sync.webhooks.handlers import classify_event

from conftest import all_rows


@pytest.fixture(autouse=True)
def no_secret(monkeypatch):
    monkeypatch.setattr(settings, "ERP_WEBHOOK_SECRET", "")
    monkeypatch.setattr(settings, "ERP_WEBHOOK_REQUIRE_SECRET", False)


def _body(payload: dict) -> bytes:
    return json.dumps(payload).encode("utf-8")


async def _seed_variant(session, *, sku="SL-P", ext_variant=None, stock=0, active=True):
    product = Product(name="Sandália Laura", slug="sandalia-laura", base_price=199.9, is_active=active)
    session.add(product)
    await session.flush()
    variant = ProductVariant(product_id=product.id, size="37", color="Preto", sku=sku,
                             stock_quantity=stock, external_variant_id=ext_variant)
    session.add(variant)
    await session.commit()
    return product, variant


@pytest.mark.parametrize("name,kind", [
    ("stock.updated", "stock"),
    ("estoque", "stock"),
    ("product.created", "product"),
    ("produto.excluido", "product"),
    ("order.created", "order"),
    ("pedido_venda", "order"),
    ("consumer_invoice.created", "invoice"),
    ("nfe.autorizada", "invoice"),
    ("nota_fiscal.emitida", "invoice"),
    ("info.updated", "unknown"),
    ("config.changed", "unknown"),
    ("something.else", "unknown"),
])
def test_classify_event(name, kind):
    assert classify_event(name) == kind


def test_verify_signature():
    body = b'{"event":"stock.updated"}'
    verify_signature(body, sign_body("s3cret", body), "s3cret")
    verify_signature(body, None, "")  # no secret on file: skipped

    with pytest.raises(WebhookSignatureError) as bad:
        verify_signature(body, "sha256=" + "0" * 64, "s3cret")
    assert bad.value.reason == "invalid_signature"

    with pytest.raises(WebhookSignatureError) as missing:
        verify_signature(body, None, "s3cret")
    assert missing.value.reason == "missing_signature"

    with pytest.raises(WebhookSignatureError) as unset:
        verify_signature(body, None, "", require_secret=True)
    assert unset.value.reason == "secret_not_configured"


@pytest.mark.asyncio
async def test_duplicate_event_is_processed_once(session, erp):
    _, variant = await _seed_variant(session, ext_variant=9001, stock=1)
    erp.stock[9001] = 6
    body = _body({"event": "stock.updated", "eventId": "evt-1", "data": {"produto": {"id": 9001}}})

    first = await process_webhook(session, erp, body)
    second = await process_webhook(session, erp, body)

    assert first.status_code == 200
    assert second.status_code == 200
    assert json.loads(second.body)["duplicate"] is True
    assert erp.count("get_stock_balances") == 1

    [event] = await all_rows(session, WebhookEvent)
    assert event.status == "processed"
    assert event.retries == 1
    [v] = await all_rows(session, ProductVariant)
    assert v.stock_quantity == 6
    results = sorted(log.result for log in await all_rows(session, WebhookLog))
    assert results == ["duplicate", "processed"]


@pytest.mark.asyncio
async def test_stock_event_backfills_variant_link_by_sku(session, erp):
    _, variant = await _seed_variant(session, sku="SL-P", stock=0)
    erp.add({"id": 9001, "nome": "Sandália Laura Preto", "codigo": "SL-P", "produtoPai": {"id": 501}}, listed=False)

    resp = await process_webhook(session, erp, _body({
        "event": "stock.updated", "eventId": "evt-a",
        "data": {"produto": {"id": 9001}, "saldoVirtualTotal": 7},
    }))
    assert resp.status_code == 200
    assert json.loads(resp.body)["resolvedVia"] == "sku"

    [v] = await all_rows(session, ProductVariant)
    assert v.stock_quantity == 7
    assert v.external_variant_id == 9001
    detail_fetches = erp.count("get_product")

    resp = await process_webhook(session, erp, _body({
        "event": "stock.updated", "eventId": "evt-b",
        "data": {"produto": {"id": 9001}, "saldoVirtualTotal": 3},
    }))
    assert json.loads(resp.body)["resolvedVia"] == "variant"
    assert erp.count("get_product") == detail_fetches
    [v] = await all_rows(session, ProductVariant)
    assert v.stock_quantity == 3


@pytest.mark.asyncio
async def test_stock_event_never_links_inactive_records(session, erp):
    boot = Product(name="Bota ZZ", slug="bota-zz", base_price=150.0, sku="ZZ", is_active=False)
    session.add(boot)
    await session.flush()
    session.add(ProductVariant(product_id=boot.id, size="38", sku="ZZ-1", stock_quantity=0))
    await session.commit()
    erp.add({"id": 8000, "nome": "Bota ZZ", "codigo": "ZZ"}, listed=False)
    erp.add({"id": 8001, "nome": "Bota ZZ 38", "codigo": "ZZ-1", "produtoPai": {"id": 8000}}, listed=False)

    for n, ext in enumerate((8000, 8001)):
        resp = await process_webhook(session, erp, _body({
            "event": "stock.updated", "eventId": f"evt-zz-{n}",
            "data": {"produto": {"id": ext}, "saldoVirtualTotal": 12},
        }))
        assert resp.status_code == 200
        assert json.loads(resp.body)["resolvedVia"] is None

    [p] = await all_rows(session, Product)
    assert p.external_product_id is None and p.is_active is False
    [v] = await all_rows(session, ProductVariant)
    assert v.external_variant_id is None
    assert v.stock_quantity == 0


@pytest.mark.asyncio
async def test_bad_signature_is_rejected_before_anything(session, erp, monkeypatch):
    monkeypatch.setattr(settings, "ERP_WEBHOOK_SECRET", "s3cret")
    body = _body({"event": "stock.updated", "eventId": "evt-x", "data": {"produto": {"id": 1}}})

    resp = await process_webhook(session, erp, body, signature="sha256=deadbeef")

    assert resp.status_code == 401
    assert await all_rows(session, WebhookEvent) == []
    [log] = await all_rows(session, WebhookLog)
    assert log.result == "rejected" and log.status_code == 401
    assert erp.calls == []


@pytest.mark.asyncio
async def test_signed_event_is_accepted(session, erp, monkeypatch):
    monkeypatch.setattr(settings, "ERP_WEBHOOK_SECRET", "s3cret")
    body = _body({"event": "order.created", "eventId": "evt-o", "data": {"id": 1}})

    resp = await process_webhook(session, erp, body, signature=sign_body("s3cret", body))

    assert resp.status_code == 200
    [event] = await all_rows(session, WebhookEvent)
    assert event.event_type == "order" and event.status == "processed"


@pytest.mark.asyncio
async def test_failed_processing_keeps_the_ledger_row(session, erp):
    session.add(Product(name="Tênis Max", slug="tenis-max", base_price=1.0, external_product_id=700))
    await session.commit()
    erp.failing.add(700)
    body = _body({"event": "product.updated", "eventId": "evt-f", "data": {"id": 700}})

    resp = await process_webhook(session, erp, body)
    assert resp.status_code == 500

    [event] = await all_rows(session, WebhookEvent)
    assert event.status == "failed"
    assert "700" in event.last_error
    assert event.processed_at is not None

    again = await process_webhook(session, erp, body)
    assert json.loads(again.body)["duplicate"] is True


@pytest.mark.asyncio
async def test_product_deletion_soft_deactivates(session, erp):
    product, _ = await _seed_variant(session)
    product.external_product_id = 501
    await session.commit()

    resp = await process_webhook(session, erp, _body({"event": "product.deleted", "eventId": "evt-d", "data": {"id": 501}}))

    assert json.loads(resp.body)["action"] == "deactivated"
    [p] = await all_rows(session, Product)
    assert p.is_active is False and p.erp_sync_status == "deleted"
    [v] = await all_rows(session, ProductVariant)
    assert v.is_active is False


@pytest.mark.asyncio
async def test_event_without_id_uses_body_digest(session, erp):
    body = _body({"evento": "pedido", "dados": {"id": 3}})
    await process_webhook(session, erp, body)
    again = await process_webhook(session, erp, body)

    assert json.loads(again.body)["duplicate"] is True
    [event] = await all_rows(session, WebhookEvent)
    assert event.event_id.startswith("sha256:")


@pytest.mark.asyncio
async def test_legacy_stock_callback(session, erp):
    await _seed_variant(session, ext_variant=9001, stock=1)
    body = _body({"retorno": {"estoques": [{"estoque": {"idProduto": 9001, "saldo": 12}}]}})

    resp = await process_webhook(session, erp, body)

    assert json.loads(resp.body)["stocks"] == 1
    [v] = await all_rows(session, ProductVariant)
    assert v.stock_quantity == 12


@pytest.mark.asyncio
async def test_cron_hook_runs_batch_stock_sync(session, erp):
    await _seed_variant(session, ext_variant=9001, stock=1)
    [p] = await all_rows(session, Product)
    p.external_product_id = 501
    await session.commit()
    erp.stock[9001] = 4

    resp = await process_webhook(session, erp, b"", query_action="cron_stock_sync")

    assert resp.status_code == 200
    assert json.loads(resp.body)["updated"] == 1
    [log] = await all_rows(session, WebhookLog)
    assert log.result == "cron"


def test_router_rejects_unsigned_request(app_db, erp, monkeypatch):
    monkeypatch.setattr(settings, "ERP_WEBHOOK_SECRET", "s3cret")
    app.dependency_overrides[get_erp_client] = lambda: erp
    try:
        client = TestClient(app)
        resp = client.post("/webhooks/erp", json={"event": "stock.updated", "eventId": "evt-r"})
    finally:
        app.dependency_overrides.clear()
    assert resp.status_code == 401
    assert resp.json() == {"ok": False, "reason": "missing_signature"}
