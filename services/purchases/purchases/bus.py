"""
Purchases Service — イベントバス (Redis Streams)

Redis Pub/Sub は fire-and-forget で、購読者が落ちている間のイベントは失われる。
カートの整合性には at-least-once が必要なので、Streams + Consumer Group を使う。

  ┌──────────────────┐  XADD   ┌───────────────────────────┐  XREADGROUP  ┌──────────────────┐
  │ Command Adapter  │ ──────▶ │ {channel}:{partition}     │ ───────────▶ │ Event Processor  │
  │ (Producer)       │         │ (チャネル × パーティション) │ ◀─────────── │ (Consumer)       │
  └──────────────────┘         └───────────────────────────┘     XACK     └──────────────────┘

- イベントはキー (カート ID / ユーザー ID) でパーティションに振り分ける。
  同じキー・同じ種類のイベントは 1 つのワーカーが発行順に処理する。
- ハンドラが正常終了した場合のみ XACK する。例外時は pending のまま残り、
  次の周回で同じコンシューマが再処理する。それまで同じストリームの新着は読まない。
- 落ちたコンシューマの pending は BUS_CLAIM_IDLE_MS 経過後に XAUTOCLAIM で奪取する。
- BUS_MAX_DELIVERIES > 0 の場合、配送回数を超えたメッセージは
  "{stream}:dead" に移して ACK する (poison message 対策)。
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Protocol

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

logger = logging.getLogger(__name__)

PAYLOAD_FIELD = "payload"

Handler = Callable[[str], Awaitable[object]]


def partition_for(key: int, partitions: int) -> int:
    return key % partitions


def stream_name(channel: str, partition: int) -> str:
    return f"{channel}:{partition}"


class Publisher(Protocol):
    async def send(self, channel: str, payload: str, key: int) -> None: ...


class RedisStreamPublisher:
    """チャネル名とキーからストリームを決めて XADD する。"""

    def __init__(self, redis: aioredis.Redis, partitions: int = 1) -> None:
        self.redis = redis
        self.partitions = partitions

    async def send(self, channel: str, payload: str, key: int) -> None:
        stream = stream_name(channel, partition_for(key, self.partitions))
        await self.redis.xadd(stream, {PAYLOAD_FIELD: payload})


class StreamConsumer:
    """
    Consumer Group でストリームを購読し、登録されたハンドラに配送する。

    ハンドラはチャネルごとに明示的に subscribe() で登録する。
    このワーカーは partitions で指定されたパーティションだけを読む。

    同じストリームの順序を守るため、毎周まず自分の pending (XREADGROUP id=0) を
    ID 順に再処理する。pending が残っているストリームからは新着 (">") を読まない。
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        group: str,
        consumer: str,
        partitions: Iterable[int] = (0,),
        block_ms: int = 1000,
        claim_idle_ms: int = 60000,
        max_deliveries: int = 0,
        batch_size: int = 10,
        retry_ms: int = 1000,
    ) -> None:
        self.redis = redis
        self.group = group
        self.consumer = consumer
        self.partitions = list(partitions)
        self.block_ms = block_ms
        self.claim_idle_ms = claim_idle_ms
        self.max_deliveries = max_deliveries
        self.batch_size = batch_size
        self.retry_ms = retry_ms
        self._handlers: dict[str, Handler] = {}
        self._failures: dict[tuple[str, str], int] = {}

    def subscribe(self, channel: str, handler: Handler) -> None:
        for partition in self.partitions:
            self._handlers[stream_name(channel, partition)] = handler

    @property
    def streams(self) -> list[str]:
        return list(self._handlers)

    async def ensure_groups(self) -> None:
        for stream in self.streams:
            try:
                await self.redis.xgroup_create(stream, self.group, id="0", mkstream=True)
                logger.info("Created consumer group %s on %s", self.group, stream)
            except ResponseError as e:
                if "BUSYGROUP" not in str(e):
                    raise

    # ── 配送 ─────────────────────────────────────

    async def dispatch(self, stream: str, message_id: str, fields: dict) -> bool:
        """
        1 件のメッセージをハンドラに渡す。
        成功時のみ ACK し True を返す。例外時は pending に残して False を返す。
        """
        handler = self._handlers[stream]
        try:
            await handler(fields.get(PAYLOAD_FIELD, ""))
        except Exception:
            key = (stream, message_id)
            self._failures[key] = self._failures.get(key, 0) + 1
            logger.exception(
                "Message %s on %s left pending for redelivery", message_id, stream
            )
            return False
        await self.redis.xack(stream, self.group, message_id)
        self._failures.pop((stream, message_id), None)
        return True

    async def drain_pending(self) -> tuple[set[str], bool]:
        """
        このコンシューマの pending を ID 順に再処理する。

        pending があったストリームの集合と、失敗があったかどうかを返す。
        失敗したストリームはそこで打ち切り、後続のメッセージは次の周回に回す。
        """
        response = await self.redis.xreadgroup(
            self.group,
            self.consumer,
            {stream: "0" for stream in self.streams},
            count=self.batch_size,
        )
        busy: set[str] = set()
        failed = False
        for stream, messages in response or []:
            for message_id, fields in messages:
                busy.add(stream)
                if not fields:
                    # ストリームから削除済みのエントリ
                    await self.redis.xack(stream, self.group, message_id)
                    continue
                if await self._exceeded_deliveries(stream, message_id):
                    await self._dead_letter(stream, message_id, fields)
                    continue
                if not await self.dispatch(stream, message_id, fields):
                    failed = True
                    break
        return busy, failed

    async def read_new(self, exclude: Iterable[str] = ()) -> int:
        excluded = set(exclude)
        streams = [stream for stream in self.streams if stream not in excluded]
        if not streams:
            return 0
        response = await self.redis.xreadgroup(
            self.group,
            self.consumer,
            {stream: ">" for stream in streams},
            count=self.batch_size,
            block=self.block_ms,
        )
        handled = 0
        for stream, messages in response or []:
            for message_id, fields in messages:
                handled += 1
                if not await self.dispatch(stream, message_id, fields):
                    # 残りは pending として次の周回で順に処理する
                    break
        return handled

    async def reclaim_pending(self) -> int:
        """
        他のコンシューマが一定時間 ACK していないメッセージを奪取する。

        奪取したメッセージは自分の pending になり、drain_pending で ID 順に処理される。
        """
        claimed = 0
        for stream in self.streams:
            start_id = "0-0"
            while True:
                result = await self.redis.xautoclaim(
                    stream,
                    self.group,
                    self.consumer,
                    min_idle_time=self.claim_idle_ms,
                    start_id=start_id,
                    count=self.batch_size,
                )
                claimed += len(result[1])
                start_id = result[0]
                if start_id in ("0-0", b"0-0"):
                    break
        if claimed:
            logger.info("Claimed %s idle messages for %s", claimed, self.consumer)
        return claimed

    async def _exceeded_deliveries(self, stream: str, message_id: str) -> bool:
        if self.max_deliveries <= 0:
            return False
        if self._failures.get((stream, message_id), 0) >= self.max_deliveries:
            return True
        pending = await self.redis.xpending_range(
            stream, self.group, min=message_id, max=message_id, count=1
        )
        return bool(pending) and pending[0]["times_delivered"] > self.max_deliveries

    async def _dead_letter(self, stream: str, message_id: str, fields: dict) -> None:
        dead = f"{stream}:dead"
        await self.redis.xadd(dead, {**fields, "source_id": message_id})
        await self.redis.xack(stream, self.group, message_id)
        self._failures.pop((stream, message_id), None)
        logger.error(
            "Message %s on %s moved to %s after %s deliveries: %s",
            message_id, stream, dead, self.max_deliveries, fields.get(PAYLOAD_FIELD),
        )

    # ── ループ ────────────────────────────────────

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """
        shutdown_event がセットされるまで、奪取・pending 再処理・新着読み取りを繰り返す。
        Redis の一時的な障害ではループを止めず、retry_ms 待って再開する。
        """
        loop = asyncio.get_running_loop()
        groups_ready = False
        next_claim = 0.0
        while not shutdown_event.is_set():
            try:
                if not groups_ready:
                    await self.ensure_groups()
                    groups_ready = True
                    logger.info(
                        "Consumer %s subscribed to %s", self.consumer, ", ".join(self.streams)
                    )
                if loop.time() >= next_claim:
                    await self.reclaim_pending()
                    next_claim = loop.time() + self.claim_idle_ms / 1000
                busy, failed = await self.drain_pending()
                if failed:
                    await asyncio.sleep(self.retry_ms / 1000)
                await self.read_new(exclude=busy)
            except (RedisConnectionError, RedisTimeoutError):
                logger.exception("Redis unavailable, retrying in %s ms", self.retry_ms)
                await asyncio.sleep(self.retry_ms / 1000)
