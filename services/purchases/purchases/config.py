"""Purchases Service — 環境変数から読み込む設定"""

import os
import socket
from collections.abc import Mapping
from dataclasses import dataclass, field


@dataclass(frozen=True)
class Topics:
    create: str = "create-shopping-cart"
    update_items: str = "update-shopping-cart-items"
    complete: str = "complete-shopping-cart"
    delete: str = "delete-shopping-cart"


@dataclass(frozen=True)
class Settings:
    database_url: str
    redis_url: str = "redis://localhost:6379"
    order_service_url: str = "http://localhost:8001"
    topics: Topics = field(default_factory=Topics)
    consumer_group: str = "purchases"
    consumer_name: str = ""
    partitions: int = 1
    worker_partitions: tuple[int, ...] = ()
    block_ms: int = 1000
    claim_idle_ms: int = 60000
    max_deliveries: int = 0
    retry_ms: int = 1000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env
        partitions = int(env.get("BUS_PARTITIONS", "1"))
        worker_partitions = env.get("WORKER_PARTITIONS", "")
        if worker_partitions:
            bound = tuple(int(p) for p in worker_partitions.split(","))
        else:
            bound = tuple(range(partitions))
        if any(p < 0 or p >= partitions for p in bound):
            raise ValueError(
                f"WORKER_PARTITIONS {worker_partitions!r} out of range for {partitions} partitions"
            )
        defaults = Topics()
        return cls(
            database_url=env["DATABASE_URL"],
            redis_url=env.get("REDIS_URL", cls.redis_url),
            order_service_url=env.get("ORDER_SERVICE_URL", cls.order_service_url),
            topics=Topics(
                create=env.get("CART_CREATE_TOPIC", defaults.create),
                update_items=env.get("CART_UPDATE_ITEMS_TOPIC", defaults.update_items),
                complete=env.get("CART_COMPLETE_TOPIC", defaults.complete),
                delete=env.get("CART_DELETE_TOPIC", defaults.delete),
            ),
            consumer_group=env.get("CONSUMER_GROUP", cls.consumer_group),
            consumer_name=env.get("CONSUMER_NAME") or f"{socket.gethostname()}-{os.getpid()}",
            partitions=partitions,
            worker_partitions=bound,
            block_ms=int(env.get("BUS_BLOCK_MS", "1000")),
            claim_idle_ms=int(env.get("BUS_CLAIM_IDLE_MS", "60000")),
            max_deliveries=int(env.get("BUS_MAX_DELIVERIES", "0")),
            retry_ms=int(env.get("BUS_RETRY_MS", "1000")),
            log_level=env.get("LOG_LEVEL", "INFO"),
        )
