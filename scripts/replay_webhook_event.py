"""
List parked webhook events or give one another attempt.

Usage:
    python scripts/replay_webhook_event.py --list
    python scripts/replay_webhook_event.py --event evt_123
    python scripts/replay_webhook_event.py --all-parked
"""
import argparse
import asyncio
import logging

from src.database import async_session_factory, dispose_engine
from src.services.event_store import (
    EventNotReplayableError,
    get_by_provider_event_id,
    list_events,
    replay_event,
)

logging.basicConfig(level=logging.INFO, format="%(message)s")
logger = logging.getLogger(__name__)


async def list_parked(limit: int) -> None:
    async with async_session_factory() as db:
        events = await list_events(db, parked_only=True, limit=limit)
    if not events:
        logger.info("No parked events.")
        return
    for event in events:
        logger.info(
            "%s  %-32s attempts=%d/%d  %s",
            event.provider_event_id, event.event_type,
            event.attempt_count, event.max_attempts,
            (event.error_message or "")[:100],
        )


async def replay(provider_event_ids: list[str]) -> int:
    replayed = 0
    async with async_session_factory() as db:
        for provider_event_id in provider_event_ids:
            event = await get_by_provider_event_id(db, provider_event_id)
            if event is None:
                logger.warning("%s: not found", provider_event_id)
                continue
            try:
                await replay_event(db, event.id)
            except EventNotReplayableError as e:
                logger.warning("%s: %s", provider_event_id, str(e))
                continue
            replayed += 1
        await db.commit()
    logger.info("Replayed %d event(s); the dispatcher picks them up on its next tick.", replayed)
    return replayed


async def main():
    parser = argparse.ArgumentParser(description="Inspect and replay parked webhook events")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--list", action="store_true", help="List parked events")
    group.add_argument("--event", action="append", help="Provider event id to replay (repeatable)")
    group.add_argument("--all-parked", action="store_true", help="Replay every parked event")
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args()

    try:
        if args.list:
            await list_parked(args.limit)
        elif args.all_parked:
            async with async_session_factory() as db:
                events = await list_events(db, parked_only=True, limit=args.limit)
            await replay([e.provider_event_id for e in events])
        else:
            await replay(args.event)
    finally:
        await dispose_engine()


if __name__ == "__main__":
    asyncio.run(main())
