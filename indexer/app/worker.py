import json
import asyncio
import logging

import redis.asyncio as redis

from .pipeline import BatchProcessor

logger = logging.getLogger("worker")


async def worker_loop(name: str, r: redis.Redis, queue_key: str, processor: BatchProcessor,
                      stop_event: asyncio.Event) -> None:
    while not stop_event.is_set():
        item = await r.blpop(queue_key, timeout=1)
        if not item:
            continue
        _, raw = item
        try:
            batch = json.loads(raw.decode("utf-8"))
            await processor.process_batch(batch)
            logger.info("worker=%s batch done", name)
        except Exception:
            logger.exception("worker=%s failed to process batch", name)
