"""
Replay worker for lead events left failed or stuck by webhook ingestion.

Usage:
    python -m workers.ingest_worker            # replay every failed/stuck event
    python -m workers.ingest_worker 12 13 14   # replay specific meta ids
"""
from __future__ import annotations

import asyncio
import sys
from typing import List, Optional, Sequence

from crm.core.config import settings
from crm.core.exceptions import BaseAPIException
from crm.core.logging import configure_structlog, get_structlog_logger
from crm.db.session import dispose_engine, session_scope
from crm.services import lead_store
from crm.services.lead_ingest import PLATFORM_FACEBOOK, LeadIngestionService

logger = get_structlog_logger(__name__)


async def replay_one(meta_id: int) -> bool:
    """Replay one event in its own session. Returns True when it ends up processed."""
    async with session_scope() as session:
        service = LeadIngestionService(session)
        try:
            result = await service.replay_meta(meta_id)
        except BaseAPIException as e:
            logger.warning("ingest_worker.replay_failed", meta_id=meta_id, code=e.code, message=e.message)
            return False
        except Exception as e:
            logger.error("ingest_worker.unexpected_error", meta_id=meta_id, error=str(e), exc_info=True)
            return False

    logger.info("ingest_worker.replayed", meta_id=meta_id, lead_id=result.lead_id, created=result.created)
    return True


async def pending_meta_ids(limit: int = 100) -> List[int]:
    async with session_scope() as session:
        rows = await lead_store.list_failed_meta(session, limit=limit)
    # Website answers are not kept on the event row, so only Facebook events are replayable
    return [row.id for row in rows if row.platform_key == PLATFORM_FACEBOOK]


def parse_meta_ids(args: Sequence[str]) -> List[int]:
    ids = []
    for arg in args:
        try:
            ids.append(int(arg))
        except ValueError:
            logger.warning("ingest_worker.invalid_meta_id", value=arg)
    return ids


async def worker_main(argv: Optional[Sequence[str]] = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    logger.info("ingest_worker.starting", environment=settings.environment)

    meta_ids = parse_meta_ids(argv) if argv else await pending_meta_ids()
    if not meta_ids:
        logger.info("ingest_worker.no_jobs")
        await dispose_engine()
        return 0

    succeeded = 0
    for meta_id in meta_ids:
        if await replay_one(meta_id):
            succeeded += 1

    await dispose_engine()
    logger.info("ingest_worker.completed", processed=len(meta_ids), succeeded=succeeded)
    return 0 if succeeded == len(meta_ids) else 1


def main() -> int:
    configure_structlog()
    return asyncio.run(worker_main())


if __name__ == "__main__":
    sys.exit(main())

