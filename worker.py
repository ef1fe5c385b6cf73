"""
worker.py
---------
Queue consumer process. Runs one consumer per topic until SIGINT/SIGTERM.

    database-creation   → provision tenant databases
    order-processing    → move new orders to WAITING_FOR_PAYMENT
    order-completed     → move paid orders to COMPLETE

Run with:
    python worker.py

Scale out by starting more processes with distinct QUEUE_CONSUMER_NAME
values; they share the consumer group, so each job goes to one of them.
"""

import asyncio
import signal

from commerce.cache.pipeline import CachePipeline
from commerce.cache.service import CacheService
from commerce.core.config import settings
from commerce.core.logging import configure_logging, get_logger
from commerce.core.redis import close_redis, get_redis
from commerce.db.session import get_registry
from commerce.provisioning.worker import ProvisioningWorker
from commerce.queue.broker import JobQueue
from commerce.queue.handlers import JobHandlers

logger = get_logger(__name__)


async def run_worker() -> None:
    configure_logging()
    registry = get_registry()
    redis = get_redis()
    queue = JobQueue.from_settings(redis, settings)
    handlers = JobHandlers(
        registry=registry,
        worker=ProvisioningWorker.from_settings(registry, settings),
        cache=CachePipeline(CacheService(redis, settings.CACHE_DEFAULT_TTL)),
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    logger.info("Worker starting", consumer=queue.consumer, group=queue.group)
    try:
        await asyncio.gather(
            *(
                queue.consume(topic, handler, stop)
                for topic, handler in handlers.routes().items()
            )
        )
    finally:
        logger.info("Worker shutting down")
        await registry.disconnect_all()
        await close_redis()


if __name__ == "__main__":
    asyncio.run(run_worker())
