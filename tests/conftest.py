import asyncio

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from catalog_sync import db
from catalog_sync.erp.erp_models import ErpCategory, ErpProductDetail, ExternalListingItem
from catalog_sync.erp.errors import ErpApiError
from catalog_sync.storage.blob_store import LocalBlobStore


class FakeErp:
    """
    In-memory stand-in for ErpClient. Payloads use the raw API shapes so they
    go through the same pydantic parsing as real responses.
    """

    stock_batch_size = 50

    def __init__(self):
        self.listing: list[dict] = []
        self.details: dict[int, dict] = {}
        self.stock: dict[int, int] = {}
        self.categories: dict[int, str] = {}
        self.failing: set[int] = set()
        self.calls: list[tuple] = []

    def add(self, detail: dict, *, listed: bool = True, name: str | None = None, stock: int | None = None):
        self.details[detail["id"]] = detail
        if listed:
            self.listing.append({
                "id": detail["id"],
                "nome": name or detail.get("nome", ""),
                "codigo": detail.get("codigo"),
                "formato": detail.get("formato", "S"),
                "situacao": detail.get("situacao", "A"),
            })
        if stock is not None:
            self.stock[detail["id"]] = stock

    def count(self, method: str) -> int:
        return sum(1 for c in self.calls if c[0] == method)

    async def list_all_products(self, max_pages=None):
        self.calls.append(("list_all_products",))
        return [ExternalListingItem.from_api(r) for r in self.listing]

    async def get_product(self, external_id):
        self.calls.append(("get_product", external_id))
        if external_id in self.failing:
            raise ErpApiError(f"product {external_id} detail failed", 500)
        if external_id not in self.details:
            raise ErpApiError(f"product {external_id} detail failed", 404)
        return ErpProductDetail.model_validate(self.details[external_id])

    async def find_products_by_sku(self, sku):
        self.calls.append(("find_products_by_sku", sku))
        return [
            ExternalListingItem.from_api({"id": d["id"], "nome": d.get("nome", ""), "codigo": d.get("codigo")})
            for d in self.details.values() if d.get("codigo") == sku
        ]

    async def get_stock_balances(self, external_ids):
        ids = [int(i) for i in external_ids]
        self.calls.append(("get_stock_balances", ids))
        return {i: self.stock[i] for i in ids if i in self.stock}

    async def get_category(self, category_id):
        self.calls.append(("get_category", category_id))
        name = self.categories.get(category_id)
        return ErpCategory(id=category_id, descricao=name) if name else None

    async def download(self, url):
        self.calls.append(("download", url))
        if "broken" in url:
            raise ErpApiError("download failed", 403)
        return b"\x89PNG fake", "image/png"


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'catalog.db'}", poolclass=NullPool)
    db.configure_engine(eng)
    await db.init_db()
    yield eng
    await eng.dispose()


@pytest.fixture
def app_db(tmp_path):
    """Same database for synchronous TestClient tests (the app runs its own loop)."""
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'app.db'}", poolclass=NullPool)
    db.configure_engine(eng)
    asyncio.run(db.init_db())
    yield eng
    asyncio.run(eng.dispose())


@pytest_asyncio.fixture
async def session(engine):
    async with db.get_sessionmaker()() as s:
        yield s


@pytest.fixture
def erp():
    return FakeErp()


@pytest.fixture
def blobs(tmp_path):
    return LocalBlobStore(str(tmp_path / "media"), "http://media.test", bucket="product-media")


async def all_rows(session, model, *where):
    stmt = select(model)
    for cond in where:
        stmt = stmt.where(cond)
    return list((await session.execute(stmt.execution_options(populate_existing=True))).scalars().all())
