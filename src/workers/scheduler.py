"""
Periodic loop shared by every background worker.
One tick at a time; a failing tick is logged and the next one still runs on schedule.
Stops when the stop event is set (graceful shutdown) or the task is cancelled.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional

from src.utils.alerting import AlertType, send_alert
from src.utils.redis_client import write_heartbeat

logger = logging.getLogger(__name__)


async def run_periodic(
    name: str,
    tick: Callable[[], Awaitable[object]],
    interval_seconds: float,
    stop_event: Optional[asyncio.Event] = None,
    heartbeat_ttl: Optional[int] = None,
) -> None:
    """Run `tick` every `interval_seconds` until `stop_event` is set."""
    stop_event = stop_event or asyncio.Event()
    ttl = heartbeat_ttl or max(int(interval_seconds * 3), 60)
    logger.info("%s started (interval=%ss)", name, interval_seconds)

    while not stop_event.is_set():
        try:
            await tick()
        except Exception as e:
            logger.error("%s error: %s", name, str(e), exc_info=True)
            await send_alert(
                AlertType.WORKER_ERROR,
                f"{name} tick failed: {type(e).__name__}: {e}",
                dedup_key=name,
            )

        await write_heartbeat(name, ttl)

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass

    logger.info("%s stopped", name)
