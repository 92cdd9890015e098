import pytest

from catalog_sync.models.sync_policy import SyncConfig
from catalog_sync.sync.policy import (
    SyncPolicy,
    begin_first_import,
    finish_first_import,
    is_first_import_running,
    load_policy,
    save_policy,
    update_policy,
)
from catalog_sync.sync.product_sync import first_import

from conftest import all_rows


def test_defaults_are_stock_only():
    policy = SyncPolicy()
    assert policy.sync_stock and policy.import_new_products and policy.merge_by_sku
    assert not any([policy.sync_titles, policy.sync_prices, policy.sync_images, policy.first_import_done])


def test_overrides_accept_camel_case_and_ignore_junk():
    policy = SyncPolicy().with_overrides({"syncPrices": True, "sync_titles": True, "bogus": True, "syncStock": "no"})
    assert policy.sync_prices and policy.sync_titles
    assert policy.sync_stock  # non-bool values are ignored
    assert not hasattr(policy, "bogus")


@pytest.mark.asyncio
async def test_load_creates_the_singleton_row(session):
    policy = await load_policy(session)
    await session.commit()
    assert policy == SyncPolicy()
    [row] = await all_rows(session, SyncConfig)
    assert row.id == 1


@pytest.mark.asyncio
async def test_save_and_update_persist(session):
    await save_policy(session, SyncPolicy(sync_images=True))
    assert (await load_policy(session)).sync_images

    updated = await update_policy(session, {"syncImages": False, "importNewProducts": False})
    assert not updated.sync_images and not updated.import_new_products
    assert await load_policy(session) == updated


@pytest.mark.asyncio
async def test_first_import_state_machine(session):
    elevated = await begin_first_import(session)
    assert elevated.sync_titles and elevated.sync_prices and elevated.sync_variant_active
    assert await is_first_import_running(session)
    # stored flags are untouched while the import runs
    assert not (await load_policy(session)).sync_titles

    await update_policy(session, {"syncTitles": True})
    final = await finish_first_import(session)
    assert final.first_import_done
    assert final.sync_stock
    assert not final.sync_titles
    assert not await is_first_import_running(session)


@pytest.mark.asyncio
async def test_first_import_runs_elevated_then_drops_to_stock_only(session, erp, blobs):
    erp.add({"id": 700, "nome": "Tênis Max", "codigo": "TM", "preco": 299.0, "situacao": "A", "formato": "S"}, stock=5)
    erp.add({"id": 701, "nome": "Tênis Run", "codigo": "TR", "preco": 199.0, "situacao": "A", "formato": "S"}, stock=2)
    await update_policy(session, {"importNewProducts": False})

    page1 = await first_import(session, erp, blobs, offset=0, limit=1)
    assert page1["imported"] == 1
    assert page1["firstImportDone"] is False
    assert await is_first_import_running(session)

    page2 = await first_import(session, erp, blobs, offset=1, limit=1)
    assert page2["imported"] == 1
    assert page2["firstImportDone"] is True
    assert page2["policy"]["first_import_done"] is True
    assert page2["policy"]["sync_prices"] is False
    assert not await is_first_import_running(session)
