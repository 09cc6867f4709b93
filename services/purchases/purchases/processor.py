"""
Purchases Service — イベントプロセッサ (Consumer 側 / 整合性の中核)

4 つのチャネルのイベントを受け取り、カートストアに適用する。
カートの状態を変更するのはここだけ (single writer)。

各ハンドラは独立に呼ばれ、冪等でなければならない。
バスが保証するのは「同じ種類・同じキー」の順序だけなので、
種類をまたいだ到着順は仮定せず、毎回ストアを読んで前提条件を判定する。

    イベント                   前提条件                          結果
    ─────────────────────────  ────────────────────────────────  ─────────
    CartCreationRequested      ユーザーの未完了カートがない       ACTIVE
    CartItemsUpdateRequested   行が存在し未完了                   ACTIVE
    CartCompletionRequested    行が存在し未完了・合計金額が一致   COMPLETED
    CartDeletionRequested      なし                               (absent)

業務上の衝突 (前提条件違反・対象なし) は Outcome として返し、ログに残して捨てる。
再配送などで既に適用済みのイベントは NO_OP として INFO で記録する。
ペイロード不正やストア障害などの例外は、生ペイロードをログに残して再送出し、
バスの再配送に任せる。
"""

import functools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from .bus import StreamConsumer
from .cart import Cart, new_cart_id
from .config import Topics
from .events import (
    CartCompletionRequested,
    CartCreationRequested,
    CartDeletionRequested,
    CartItemsUpdateRequested,
)
from .orders import OrderTrigger
from .store import IncompleteCartExists, StoreFactory

logger = logging.getLogger(__name__)


class OutcomeStatus(str, Enum):
    APPLIED = "APPLIED"
    REJECTED = "REJECTED"
    NOT_FOUND = "NOT_FOUND"
    NO_OP = "NO_OP"


@dataclass(frozen=True)
class Outcome:
    status: OutcomeStatus
    reason: str = ""
    cart: Cart | None = None

    @classmethod
    def applied(cls, cart: Cart | None = None, reason: str = "") -> "Outcome":
        return cls(OutcomeStatus.APPLIED, reason, cart)

    @classmethod
    def rejected(cls, reason: str, cart: Cart | None = None) -> "Outcome":
        return cls(OutcomeStatus.REJECTED, reason, cart)

    @classmethod
    def no_op(cls, reason: str, cart: Cart | None = None) -> "Outcome":
        return cls(OutcomeStatus.NO_OP, reason, cart)

    @classmethod
    def not_found(cls, cart_id: int) -> "Outcome":
        return cls(OutcomeStatus.NOT_FOUND, f"Not shopping cart found with id {cart_id}")


def _handler_boundary(event_name: str):
    """
    ハンドラ境界: 受信ログと例外ログ (生ペイロード付き) を出し、例外は再送出する。
    """

    def decorator(func: Callable[["CartEventProcessor", str], Awaitable[Outcome]]):
        @functools.wraps(func)
        async def wrapper(self: "CartEventProcessor", payload: str) -> Outcome:
            logger.info("Received %s %s", event_name, payload)
            try:
                outcome = await func(self, payload)
            except Exception:
                logger.exception("Error processing event %s", payload)
                raise
            if outcome.status is OutcomeStatus.APPLIED:
                logger.info("%s applied: %s", event_name, outcome.cart or outcome.reason)
            elif outcome.status is OutcomeStatus.NO_OP:
                logger.info("%s ignored: %s", event_name, outcome.reason)
            elif outcome.status is OutcomeStatus.NOT_FOUND:
                logger.error("%s dropped: %s", event_name, outcome.reason)
            else:
                logger.warning("%s dropped: %s", event_name, outcome.reason)
            return outcome

        return wrapper

    return decorator


class CartEventProcessor:
    def __init__(self, store_factory: StoreFactory, order_trigger: OrderTrigger) -> None:
        self.store_factory = store_factory
        self.order_trigger = order_trigger

    def register(self, consumer: StreamConsumer, topics: Topics) -> None:
        """4 つのチャネルにハンドラを明示的に登録する。"""
        consumer.subscribe(topics.create, self.on_creation_requested)
        consumer.subscribe(topics.update_items, self.on_items_update_requested)
        consumer.subscribe(topics.complete, self.on_completion_requested)
        consumer.subscribe(topics.delete, self.on_deletion_requested)

    @_handler_boundary("CartCreationRequested")
    async def on_creation_requested(self, payload: str) -> Outcome:
        """未完了カートがないユーザーに限り、新しいカートを保存する。"""
        event = CartCreationRequested.model_validate_json(payload)
        cart = event.to_cart()
        async with self.store_factory() as store:
            incomplete = await store.find_incomplete_by_user(cart.user_id)
            if incomplete is not None:
                return Outcome.rejected(
                    "Can't create shopping cart. Already exists an incomplete "
                    f"shopping cart {incomplete.id} for user {cart.user_id}",
                    incomplete,
                )
            if cart.id is None:
                cart.id = new_cart_id()
            elif await store.find_by_id(cart.id) is not None:
                # 再配送された古い作成要求で既存カートを上書きしない
                return Outcome.rejected(f"Shopping cart {cart.id} already exists")
            try:
                await store.save(cart)
                await store.commit()
            except IncompleteCartExists as e:
                return Outcome.rejected(str(e))
        return Outcome.applied(cart)

    @_handler_boundary("CartItemsUpdateRequested")
    async def on_items_update_requested(self, payload: str) -> Outcome:
        """未完了カートの明細と合計金額を上書きする。"""
        event = CartItemsUpdateRequested.model_validate_json(payload)
        async with self.store_factory() as store:
            cart = await store.find_by_id(event.id, for_update=True)
            if cart is None:
                return Outcome.not_found(event.id)
            if cart.completed:
                return Outcome.rejected(
                    f"Can't update items on completed shopping cart {cart.id}", cart
                )
            cart.replace_items([i.to_item() for i in event.items], event.total_price)
            await store.save(cart)
            await store.commit()
        return Outcome.applied(cart)

    @_handler_boundary("CartCompletionRequested")
    async def on_completion_requested(self, payload: str) -> Outcome:
        """
        合計金額が一致する未完了カートを完了にし、注文作成を依頼する。

        既に完了済みなら何もしない (冪等)。注文作成の依頼はコミット後に行い、
        その失敗で completed は戻さない。
        """
        event = CartCompletionRequested.model_validate_json(payload)
        async with self.store_factory() as store:
            cart = await store.find_by_id(event.id, for_update=True)
            if cart is None:
                return Outcome.not_found(event.id)
            if cart.completed:
                return Outcome.no_op(f"Shopping cart {cart.id} already completed", cart)
            if not cart.matches_total(event.total_price):
                return Outcome.rejected(
                    f"Shopping cart {cart.id} total price {cart.total_price} is different "
                    f"of passed price {event.total_price}",
                    cart,
                )
            cart.complete()
            await store.save(cart)
            await store.commit()

        await self.order_trigger.create(cart)
        return Outcome.applied(cart)

    @_handler_boundary("CartDeletionRequested")
    async def on_deletion_requested(self, payload: str) -> Outcome:
        """無条件に削除する。存在しなければ何もしない。"""
        event = CartDeletionRequested.model_validate_json(payload)
        async with self.store_factory() as store:
            deleted = await store.delete_by_id(event.id)
            await store.commit()
        if not deleted:
            return Outcome.no_op(f"Shopping cart with id {event.id} already absent")
        return Outcome.applied(reason=f"Shopping cart with id {event.id} deleted")
