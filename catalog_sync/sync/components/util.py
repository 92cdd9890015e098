# catalog_sync/sync/components/util.py
from __future__ import annotations

import re
from datetime import datetime, timezone
from urllib.parse import urlsplit, urlunsplit

from catalog_sync.erp.erp_attributes import strip_accents


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def strip_html(text: str | None) -> str:
    return re.sub(r"\s+", " ", re.sub(r"<[^>]+>", " ", text or "")).strip()


def slugify(text: str) -> str:
    s = strip_accents(text or "").lower()
    s = re.sub(r"[^a-z0-9]+", "-", s).strip("-")
    return s or "item"


def strip_query(url: str) -> str:
    """Drop query string and fragment (removes expiring signatures)."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def dedupe_preserve_order(items):
    seen = set()
    out = []
    for x in items or []:
        if not x or x in seen:
            continue
        seen.add(x)
        out.append(x)
    return out
