"""
Purchases Service — コマンドアダプタ (Producer 側)

カートへの変更意図 (作成・明細更新・完了・削除) をイベントに変換し、
意図ごとのチャネルに発行する。状態は一切持たない。

発行は呼び出し元から見て fire-and-forget:
発行に失敗してもログを残すだけで例外は返さず、再送もしない。
(再送はバス側の責務。コマンドが届いたかどうかは後続の読み取りで確認する)

読み取り (未完了カート取得・ID + ユーザーで取得) はイベントを経由せず、
ストアを直接同期的に読む。状態を変更しないので整合性の経路には乗らない。
"""

import logging

from .bus import Publisher
from .cart import Cart, new_cart_id
from .config import Topics
from .events import (
    CartCompletionRequested,
    CartCreationRequested,
    CartDeletionRequested,
    CartEvent,
    CartItemsUpdateRequested,
    ItemPayload,
)
from .store import StoreFactory

logger = logging.getLogger(__name__)


class CartCommandAdapter:
    def __init__(self, publisher: Publisher, store_factory: StoreFactory, topics: Topics) -> None:
        self.publisher = publisher
        self.store_factory = store_factory
        self.topics = topics

    async def _publish(self, channel: str, event: CartEvent) -> bool:
        try:
            await self.publisher.send(channel, event.to_json(), event.partition_key())
        except Exception:
            logger.exception("Error sending %s to %s", type(event).__name__, channel)
            return False
        logger.info("Sent %s %s", type(event).__name__, event)
        return True

    # ── Commands (イベント発行) ─────────────────────

    async def create(self, cart: Cart) -> bool:
        """カート作成要求を発行する。ID が未採番ならここで採番する。"""
        if cart.id is None:
            cart.id = new_cart_id()
        event = CartCreationRequested(
            id=cart.id,
            user_id=cart.user_id,
            items=[ItemPayload.from_item(i) for i in cart.items],
            total_price=cart.total_price,
        )
        return await self._publish(self.topics.create, event)

    async def update_items(self, cart: Cart) -> bool:
        event = CartItemsUpdateRequested(
            id=cart.id,
            items=[ItemPayload.from_item(i) for i in cart.items],
            total_price=cart.total_price,
        )
        return await self._publish(self.topics.update_items, event)

    async def complete(self, cart: Cart) -> bool:
        event = CartCompletionRequested(id=cart.id, total_price=cart.total_price)
        return await self._publish(self.topics.complete, event)

    async def delete(self, cart_id: int) -> bool:
        return await self._publish(self.topics.delete, CartDeletionRequested(id=cart_id))

    # ── Queries (ストア直接読み取り) ────────────────

    async def get_incomplete_by_user(self, user_id: int) -> Cart | None:
        async with self.store_factory() as store:
            return await store.find_incomplete_by_user(user_id)

    async def get_by_id_and_user(self, cart_id: int, user_id: int) -> Cart | None:
        async with self.store_factory() as store:
            return await store.find_by_id_and_user(cart_id, user_id)
