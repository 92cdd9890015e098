import pytest

from catalog_sync.erp.errors import ErpApiError
from catalog_sync.models.catalog import Product, ProductVariant
from catalog_sync.models.sync_runs import SyncRun
from catalog_sync.sync.policy import update_policy
from catalog_sync.sync.stock_sync import batch_stock_sync, sync_single_stock

from conftest import all_rows


async def _product(session, name, *, ext=None, active=True, status=None, sku=None, variants=()):
    product = Product(name=name, slug=name.lower().replace(" ", "-"), base_price=10.0, sku=sku,
                      external_product_id=ext, is_active=active, erp_sync_status=status)
    session.add(product)
    await session.flush()
    for ext_variant, variant_sku, stock in variants:
        session.add(ProductVariant(product_id=product.id, sku=variant_sku, stock_quantity=stock,
                                   external_variant_id=ext_variant, is_active=active))
    await session.commit()
    return product


async def _stock_of(session, product):
    rows = await all_rows(session, ProductVariant, ProductVariant.product_id == product.id)
    return sorted(v.stock_quantity for v in rows)


@pytest.mark.asyncio
async def test_batch_refreshes_linked_products(session, erp):
    sandal = await _product(session, "Sandalia", ext=501, variants=[(5011, "SL-P", 1), (5012, "SL-B", 0)])
    tenis = await _product(session, "Tenis", ext=700, variants=[(None, "TM", 1)])
    gone = await _product(session, "Bota", ext=800, active=False, status="deleted", variants=[(None, "BT", 0)])
    hidden = await _product(session, "Chinelo", ext=900, active=False, status="synced", variants=[(None, "CH", 0)])
    erp.stock.update({5011: 3, 5012: 0, 700: 9, 800: 4, 900: 7})

    summary = await batch_stock_sync(session, erp)

    assert summary["externalIds"] == 4
    assert summary["updated"] == 3
    assert summary["reactivated"] == 1
    assert summary["errors"] == 0
    assert await _stock_of(session, sandal) == [0, 3]
    assert await _stock_of(session, tenis) == [9]
    assert await _stock_of(session, hidden) == [0]

    [bota] = await all_rows(session, Product, Product.id == gone.id)
    assert bota.is_active is True and bota.erp_sync_status == "synced"
    [run] = await all_rows(session, SyncRun)
    assert run.trigger_type == "cron_stock_sync" and run.finished_at is not None


@pytest.mark.asyncio
async def test_batch_failure_does_not_stop_the_run(session, erp):
    first = await _product(session, "Um", ext=1, variants=[(None, "A", 0)])
    second = await _product(session, "Dois", ext=2, variants=[(None, "B", 0)])
    erp.stock.update({1: 5, 2: 6})
    erp.stock_batch_size = 1
    real = erp.get_stock_balances

    async def flaky(ids):
        if 1 in ids:
            raise ErpApiError("stock batch failed", 503)
        return await real(ids)

    erp.get_stock_balances = flaky
    summary = await batch_stock_sync(session, erp)

    assert summary["errors"] == 1
    assert summary["log"][0]["batch"] == 1
    assert await _stock_of(session, first) == [0]
    assert await _stock_of(session, second) == [6]


@pytest.mark.asyncio
async def test_batch_respects_the_stock_flag(session, erp):
    await _product(session, "Tenis", ext=700, variants=[(None, "TM", 1)])
    await update_policy(session, {"syncStock": False})

    summary = await batch_stock_sync(session, erp)

    assert summary["skipped"] is True and summary["reason"] == "sync_disabled"
    assert erp.calls == []


@pytest.mark.asyncio
async def test_single_stock_error_codes(session, erp):
    assert (await sync_single_stock(session, erp, 999))["error"] == "produto_nao_encontrado"

    off = await _product(session, "Off", active=False)
    assert (await sync_single_stock(session, erp, off.id))["error"] == "produto_inativo"

    loose = await _product(session, "Loose", variants=[(None, None, 0)])
    assert (await sync_single_stock(session, erp, loose.id))["error"] == "sem_vinculo_erp"

    orphan = await _product(session, "Orphan", sku="NOPE")
    res = await sync_single_stock(session, erp, orphan.id)
    assert res["error"] == "sku_nao_encontrado" and res["sku"] == "NOPE"


@pytest.mark.asyncio
async def test_single_stock_links_by_sku(session, erp):
    erp.add({
        "id": 501, "nome": "Sandália Laura", "codigo": "SL", "formato": "V", "situacao": "A",
        "variacoes": [
            {"id": 5011, "nome": "Sandália Laura Cor:Preto", "codigo": "SL-P"},
            {"id": 5012, "nome": "Sandália Laura Cor:Branco", "codigo": "SL-B"},
        ],
    }, listed=False)
    erp.stock.update({5011: 3, 5012: 4})
    product = await _product(session, "Sandalia", sku="SL", variants=[(None, "SL-P", 0), (None, "SL-B", 0)])

    res = await sync_single_stock(session, erp, product.id)

    assert res["success"] is True and res["updated"] == 2
    [p] = await all_rows(session, Product)
    assert p.external_product_id == 501 and p.erp_sync_status == "synced"
    variants = await all_rows(session, ProductVariant)
    assert {(v.sku, v.external_variant_id, v.stock_quantity) for v in variants} == {
        ("SL-P", 5011, 3),
        ("SL-B", 5012, 4),
    }


@pytest.mark.asyncio
async def test_single_stock_failure_is_stamped(session, erp):
    product = await _product(session, "Tenis", ext=700, variants=[(None, "TM", 1)])
    erp.failing.add(700)

    res = await sync_single_stock(session, erp, product.id)

    assert res["success"] is False
    [p] = await all_rows(session, Product)
    assert p.erp_sync_status == "error"
    assert "700" in p.erp_last_error
