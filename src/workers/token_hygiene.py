"""
Token hygiene - purges expired and revoked auth tokens.
Same scheduling contract as the order reaper.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, or_

from src.config import get_settings
from src.models.auth_token import AuthToken
from src.utils.timezone import utc_now

logger = logging.getLogger(__name__)

WORKER_NAME = "token_hygiene"


async def run_token_hygiene(stop_event: Optional[asyncio.Event] = None) -> None:
    from src.workers.scheduler import run_periodic

    settings = get_settings()
    await run_periodic(WORKER_NAME, purge_once, settings.token_hygiene_interval_seconds, stop_event)


async def purge_once(now: Optional[datetime] = None) -> int:
    """Delete tokens expired or revoked longer ago than the retention window. Returns rows deleted."""
    from src.database import async_session_factory

    now = now or utc_now()
    cutoff = now - timedelta(hours=get_settings().token_retention_hours)

    async with async_session_factory() as db:
        result = await db.execute(
            delete(AuthToken)
            .where(
                or_(
                    AuthToken.expires_at <= cutoff,
                    AuthToken.revoked_at <= cutoff,
                )
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    purged = result.rowcount or 0
    if purged:
        logger.info("Token hygiene purged %d expired/revoked tokens", purged)
    return purged
