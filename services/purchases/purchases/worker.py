"""
Purchases Service — スタンドアロンのコンシューマワーカー

    WORKER_PARTITIONS=0,1 python -m purchases.worker

パーティションごとにワーカーを分けてスケールさせる。
同じパーティションを読むワーカーは同一 Consumer Group に属する。
"""

import asyncio
import functools
import logging
import signal

import httpx
import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .bus import StreamConsumer
from .config import Settings
from .orders import HttpOrderUseCase
from .processor import CartEventProcessor
from .store import create_schema, open_cart_store

logger = logging.getLogger(__name__)


async def run_worker(settings: Settings, shutdown_event: asyncio.Event) -> None:
    engine = create_async_engine(settings.database_url, echo=False)
    async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    redis_conn = aioredis.from_url(settings.redis_url, decode_responses=True)
    try:
        await create_schema(engine)
        async with httpx.AsyncClient(timeout=30.0) as client:
            processor = CartEventProcessor(
                functools.partial(open_cart_store, async_session),
                HttpOrderUseCase(client, settings.order_service_url),
            )
            consumer = StreamConsumer(
                redis_conn,
                settings.consumer_group,
                settings.consumer_name,
                partitions=settings.worker_partitions,
                block_ms=settings.block_ms,
                claim_idle_ms=settings.claim_idle_ms,
                max_deliveries=settings.max_deliveries,
                retry_ms=settings.retry_ms,
            )
            processor.register(consumer, settings.topics)
            await consumer.run(shutdown_event)
    finally:
        await redis_conn.aclose()
        await engine.dispose()
        logger.info("Worker stopped")


async def main() -> None:
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, shutdown_event.set)
    await run_worker(settings, shutdown_event)


if __name__ == "__main__":
    asyncio.run(main())
