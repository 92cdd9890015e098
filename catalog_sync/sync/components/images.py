# catalog_sync/sync/components/images.py
from __future__ import annotations

import logging
import time
from typing import List

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.erp.errors import ErpApiError
from catalog_sync.models.catalog import ProductImage
from catalog_sync.storage.blob_store import BlobStoreError
from catalog_sync.sync.components.util import dedupe_preserve_order, strip_query

logger = logging.getLogger(__name__)

# markers of pre-signed URLs that stop working after a while
EXPIRING_MARKERS = ("X-Amz-", "Expires=", "Signature=")

_EXTENSIONS = {
    "image/png": "png",
    "image/webp": "webp",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
}


def has_expiring_signature(url: str | None) -> bool:
    return bool(url) and any(m in url for m in EXPIRING_MARKERS)


def extension_for(content_type: str) -> str:
    return _EXTENSIONS.get((content_type or "").lower(), "jpg")


async def rehost_image(erp, blobs, product_id: int, index: int, url: str) -> str:
    """
    Download from the ERP and upload to our blob store. Any failure degrades
    to the source URL without its query string.
    """
    try:
        data, content_type = await erp.download(url)
        key = f"erp/{product_id}/{index}-{int(time.time() * 1000)}.{extension_for(content_type)}"
        return await blobs.upload(key, data, content_type or "image/jpeg")
    except (ErpApiError, BlobStoreError) as e:
        logger.warning("[IMAGES] re-host failed for product %s image %d: %s", product_id, index, e)
        return strip_query(url)


async def rehost_images(erp, blobs, product_id: int, urls: List[str]) -> List[str]:
    out: List[str] = []
    for idx, url in enumerate(dedupe_preserve_order(urls)):
        out.append(await rehost_image(erp, blobs, product_id, idx, url))
    return out


async def replace_product_images(
    session: AsyncSession, erp, blobs, product_id: int, urls: List[str], alt_text: str | None = None
) -> int:
    """Replace the whole image set of one product. Returns the new image count."""
    hosted = await rehost_images(erp, blobs, product_id, urls)
    await session.execute(delete(ProductImage).where(ProductImage.product_id == product_id))
    for idx, url in enumerate(hosted):
        session.add(ProductImage(
            product_id=product_id,
            url=url,
            alt_text=alt_text,
            display_order=idx,
            is_primary=idx == 0,
        ))
    logger.info("[IMAGES] product %s: %d image(s) stored", product_id, len(hosted))
    return len(hosted)
