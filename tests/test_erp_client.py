import httpx
import pytest

from catalog_sync.config import settings
from catalog_sync.erp.erp_client import ErpClient, StaticTokenProvider, TokenManager
from catalog_sync.erp.errors import ErpApiError, ErpConfigError
from catalog_sync.models.credentials import ErpCredentials


def _client(handler, tokens=None, **kw):
    delays = []

    async def fake_sleep(seconds):
        delays.append(seconds)

    client = ErpClient(
        tokens or StaticTokenProvider("tok"),
        base_url="https://erp.test/v3",
        min_interval_ms=0,
        retry_backoff=1.0,
        transport=httpx.MockTransport(handler),
        sleep=fake_sleep,
        **kw,
    )
    return client, delays


@pytest.mark.asyncio
async def test_429_backs_off_then_returns_last_response():
    hits = []

    def handler(request):
        hits.append(request)
        return httpx.Response(429, json={"error": "too many"})

    client, delays = _client(handler, max_retries=3)
    resp = await client.request("GET", "/produtos")

    assert resp.status_code == 429
    assert len(hits) == 4
    assert delays == [1.0, 2.0, 3.0]


@pytest.mark.asyncio
async def test_401_forces_one_token_refresh():
    tokens = StaticTokenProvider("tok")
    statuses = iter([401, 200])

    def handler(request):
        assert request.headers["Authorization"] == "Bearer tok"
        return httpx.Response(next(statuses), json={"data": []})

    client, _ = _client(handler, tokens=tokens)
    resp = await client.request("GET", "/produtos")

    assert resp.status_code == 200
    assert tokens.refreshes == 1


@pytest.mark.asyncio
async def test_second_401_is_returned():
    tokens = StaticTokenProvider("tok")
    client, _ = _client(lambda r: httpx.Response(401), tokens=tokens)

    resp = await client.request("GET", "/produtos")
    assert resp.status_code == 401
    assert tokens.refreshes == 1


@pytest.mark.asyncio
async def test_stock_balances_are_batched():
    seen = []

    def handler(request):
        ids = [int(i) for i in request.url.params.get_list("idsProdutos[]")]
        seen.append(ids)
        return httpx.Response(200, json={"data": [
            {"produto": {"id": i}, "saldoVirtualTotal": i % 7} for i in ids
        ]})

    client, _ = _client(handler, stock_batch_size=500)
    balances = await client.get_stock_balances(range(1, 121))

    assert client.stock_batch_size == 50
    assert [len(b) for b in seen] == [50, 50, 20]
    assert len(balances) == 120
    assert balances[13] == 6


@pytest.mark.asyncio
async def test_listing_stops_on_short_page():
    pages = []

    def handler(request):
        page = int(request.url.params["pagina"])
        pages.append(page)
        size = 2 if page == 1 else 1
        return httpx.Response(200, json={"data": [
            {"id": page * 10 + i, "nome": f"Item {page}-{i}", "formato": "S", "situacao": "A"} for i in range(size)
        ]})

    client, _ = _client(handler, page_size=2)
    items = await client.list_all_products()

    assert pages == [1, 2]
    assert [i.external_id for i in items] == [10, 11, 20]


@pytest.mark.asyncio
async def test_detail_error_raises():
    client, _ = _client(lambda r: httpx.Response(500, text="boom"))
    with pytest.raises(ErpApiError) as err:
        await client.get_product(42)
    assert err.value.status_code == 500


@pytest.mark.asyncio
async def test_missing_category_is_none():
    def handler(request):
        if request.url.path.endswith("/77"):
            return httpx.Response(200, json={"data": {"id": 77, "descricao": "Calçados Femininos"}})
        return httpx.Response(404)

    client, _ = _client(handler)
    assert (await client.get_category(77)).descricao == "Calçados Femininos"
    assert await client.get_category(78) is None


@pytest.mark.asyncio
async def test_transport_error_becomes_api_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    client, _ = _client(handler)
    with pytest.raises(ErpApiError):
        await client.request("GET", "/produtos")


# --- TokenManager ----------------------------------------------------------

@pytest.mark.asyncio
async def test_token_refreshed_when_close_to_expiry(session):
    session.add(ErpCredentials(id=1, access_token="old", refresh_token="r1", expires_at=1100))
    await session.commit()
    posted = []

    def handler(request):
        posted.append(request.content.decode())
        return httpx.Response(200, json={"access_token": "new", "refresh_token": "r2", "expires_in": 3600})

    tokens = TokenManager(
        token_url="https://erp.test/oauth/token", client_id="cid", client_secret="sec",
        refresh_margin=300, transport=httpx.MockTransport(handler), clock=lambda: 1000,
    )
    assert await tokens.get_token() == "new"
    assert "grant_type=refresh_token" in posted[0]

    creds = await session.get(ErpCredentials, 1, populate_existing=True)
    assert creds.refresh_token == "r2"
    assert creds.expires_at == 4600

    # fresh now: no second refresh
    assert await tokens.get_token() == "new"
    assert len(posted) == 1


@pytest.mark.asyncio
async def test_never_linked_is_a_config_error(engine, monkeypatch):
    monkeypatch.setattr(settings, "ERP_ACCESS_TOKEN", "")
    monkeypatch.setattr(settings, "ERP_REFRESH_TOKEN", "")
    tokens = TokenManager(client_id="cid", client_secret="sec")
    with pytest.raises(ErpConfigError):
        await tokens.get_token()


@pytest.mark.asyncio
async def test_rejected_refresh_is_a_config_error(session):
    session.add(ErpCredentials(id=1, access_token=None, refresh_token="r1", expires_at=0))
    await session.commit()
    tokens = TokenManager(
        token_url="https://erp.test/oauth/token", client_id="cid", client_secret="sec",
        transport=httpx.MockTransport(lambda r: httpx.Response(400, json={"error": "invalid_grant"})),
    )
    with pytest.raises(ErpConfigError):
        await tokens.get_token()
