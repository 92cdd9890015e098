# catalog_sync/sync/run_ledger.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from catalog_sync.config import settings
from catalog_sync.models.sync_runs import SyncRun
from catalog_sync.sync.components.util import utcnow

logger = logging.getLogger(__name__)


def cap_log(entries: List[Dict[str, Any]], limit: Optional[int] = None) -> tuple[List[Dict[str, Any]], bool]:
    """Trim a per-item log for transport; returns (entries, truncated)."""
    limit = settings.SYNC_LOG_LIMIT if limit is None else limit
    if len(entries) <= limit:
        return entries, False
    return entries[:limit], True


async def start_run(session: AsyncSession, trigger_type: str) -> int:
    run = SyncRun(trigger_type=trigger_type, started_at=utcnow())
    session.add(run)
    await session.commit()
    return run.id


async def finish_run(
    session: AsyncSession,
    run_id: int,
    *,
    processed: int,
    updated: int,
    errors: List[Dict[str, Any]],
) -> None:
    # re-read: a rolled back group expires every loaded instance
    run = await session.get(SyncRun, run_id, populate_existing=True)
    if run is None:
        return
    capped, _ = cap_log(errors)
    run.finished_at = utcnow()
    run.processed_count = processed
    run.updated_count = updated
    run.errors_count = len(errors)
    run.error_details = capped or None
    await session.commit()
    logger.info(
        "[SYNC] run %s (%s) finished: processed=%d updated=%d errors=%d",
        run.id, run.trigger_type, processed, updated, len(errors),
    )
