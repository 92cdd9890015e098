import logging

import pytest
from fastapi.testclient import TestClient

from catalog_sync.config import settings
from catalog_sync.erp.erp_client import get_erp_client
from catalog_sync.erp.errors import ErpConfigError
from catalog_sync.logging_filters import SanitizeFilter, redact_secrets
from catalog_sync.main_app import app
from catalog_sync.storage.blob_store import get_blob_store

AUTH = ("ops", "pw")


@pytest.fixture
def client(app_db, erp, blobs, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_USER", AUTH[0])
    monkeypatch.setattr(settings, "ADMIN_PASS", AUTH[1])
    app.dependency_overrides[get_erp_client] = lambda: erp
    app.dependency_overrides[get_blob_store] = lambda: blobs
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_sync_requires_basic_auth(client):
    assert client.post("/api/sync", json={"action": "sync_stock"}).status_code == 401
    assert client.post("/api/sync", json={"action": "sync_stock"}, auth=("ops", "nope")).status_code == 401


def test_unknown_action_is_rejected(client):
    resp = client.post("/api/sync", json={"action": "drop_tables"}, auth=AUTH)
    assert resp.status_code == 400
    assert "drop_tables" in resp.json()["detail"]


def test_required_ids_are_checked(client):
    assert client.post("/api/sync", json={"action": "sync_single_stock"}, auth=AUTH).status_code == 400
    assert client.post("/api/sync", json={"action": "debug_product", "external_id": "x"}, auth=AUTH).status_code == 400


def test_sync_products_over_http(client, erp):
    erp.add({"id": 700, "nome": "Tênis Max", "codigo": "TM", "preco": 299.0, "situacao": "A", "formato": "S"}, stock=3)

    resp = client.post("/api/sync", json={"action": "sync_products", "limit": 5}, auth=AUTH)

    assert resp.status_code == 200
    body = resp.json()
    assert body["imported"] == 1 and body["hasMore"] is False
    assert body["log"][0]["externalId"] == 700


def test_unlinked_erp_stops_the_run_with_400(client, erp):
    erp.add({"id": 700, "nome": "Tênis Max", "codigo": "TM", "preco": 299.0, "situacao": "A", "formato": "S"})
    erp.add({"id": 701, "nome": "Tênis Run", "codigo": "TR", "preco": 199.0, "situacao": "A", "formato": "S"})

    async def unlinked(external_id):
        erp.calls.append(("get_product", external_id))
        raise ErpConfigError("ERP integration not linked: no access or refresh token on file")

    erp.get_product = unlinked

    resp = client.post("/api/sync", json={"action": "sync_products"}, auth=AUTH)

    assert resp.status_code == 400
    assert "not linked" in resp.json()["error"]
    assert erp.count("get_product") == 1


def test_stock_sync_over_http(client):
    resp = client.post("/api/sync", json={"action": "cron_stock_sync"}, auth=AUTH)
    assert resp.status_code == 200
    assert resp.json()["action"] == "cron_stock_sync"


def test_policy_roundtrip(client):
    initial = client.get("/api/sync/policy", auth=AUTH).json()
    assert initial["policy"]["sync_stock"] is True
    assert initial["firstImportRunning"] is False

    resp = client.put("/api/sync/policy", json={"syncPrices": True, "unknown": 1}, auth=AUTH)
    assert resp.status_code == 200
    assert resp.json()["policy"]["sync_prices"] is True
    assert client.get("/api/sync/policy", auth=AUTH).json()["policy"]["sync_prices"] is True


def test_health_is_open(client):
    assert client.get("/api/health").json() == {"status": "ok"}


def test_secrets_are_redacted():
    line = 'Authorization: Bearer abc.def-123 {"access_token": "tok1", "refresh_token":"tok2"} sha256=' + "ab" * 32
    clean = redact_secrets(line)
    for secret in ("abc.def-123", "tok1", "tok2", "ab" * 32):
        assert secret not in clean
    assert clean.count("<redacted>") == 4


def test_filter_rewrites_the_record():
    record = logging.LogRecord("x", logging.INFO, __file__, 1, "token %s", ("Bearer s3cr3t",), None)
    assert SanitizeFilter().filter(record) is True
    assert record.getMessage() == "token Bearer <redacted>"
