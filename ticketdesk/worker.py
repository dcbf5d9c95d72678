import asyncio
import logging

import httpx
from redis.asyncio import Redis

from .config import NOTIFICATION_STREAM, REDIS_URL
from .logging_setup import setup_logging
from .notify import Notification, deliver

logger = logging.getLogger("ticketdesk.worker")


async def main(redis: Redis):
    # resume where we left off so the backlog survives restarts
    last_id = await redis.get("worker:last_id") or "0-0"

    async with httpx.AsyncClient() as client:
        while True:
            last_id = await drain_once(redis, client, last_id)


async def drain_once(redis: Redis, client: httpx.AsyncClient, last_id: str, block_ms: int = 5000) -> str:
    """Deliver one batch from the stream and return the id to resume from."""
    resp = await redis.xread({NOTIFICATION_STREAM: last_id}, block=block_ms, count=50)
    if not resp:
        return last_id

    _, messages = resp[0]
    for msg_id, data in messages:
        last_id = msg_id
        try:
            await process_one(client, data)
        except Exception:
            # one poisoned entry must not stall everything queued behind it
            logger.exception("delivery crashed, dropping entry %s", msg_id)
        await redis.xdel(NOTIFICATION_STREAM, msg_id)

        # persist progress
        await redis.set("worker:last_id", last_id)
    return last_id


async def process_one(client: httpx.AsyncClient, data: dict) -> bool:
    """Deliver one queued notification. Failures are logged and dropped, never retried."""
    try:
        n = Notification.from_fields(data)
    except (KeyError, ValueError):
        logger.warning("dropping malformed notification %r", data)
        return False

    logger.info("delivering %s to %s", n.kind, n.target)
    return await deliver(client, n)


if __name__ == "__main__":
    setup_logging()
    asyncio.run(main(Redis.from_url(REDIS_URL, decode_responses=True)))
