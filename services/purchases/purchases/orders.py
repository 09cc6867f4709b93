"""
Purchases Service — 注文作成トリガー

カート完了が確定 (コミット) した後に、Order Service へ注文作成を依頼する。

この呼び出しは at-least-once の境界にある:
イベントの再配送で同じカートの依頼が 2 回届くことがあるため、
カート ID を Idempotency-Key として渡し、受け側で重複排除できるようにする。
失敗してもカートの completed は戻さない (ベストエフォート)。
"""

import logging
from typing import Protocol

import httpx

from .cart import Cart

logger = logging.getLogger(__name__)


class OrderTrigger(Protocol):
    async def create(self, cart: Cart) -> bool: ...


def idempotency_key(cart: Cart) -> str:
    return f"shopping-cart-{cart.id}"


class HttpOrderUseCase:
    """Order Service の注文作成コマンドを HTTP で呼び出す。"""

    def __init__(self, client: httpx.AsyncClient, order_service_url: str) -> None:
        self.client = client
        self.order_url = order_service_url.rstrip("/")

    async def create(self, cart: Cart) -> bool:
        try:
            resp = await self.client.post(
                f"{self.order_url}/commands/orders",
                json={
                    "shoppingCartId": cart.id,
                    "userId": cart.user_id,
                    "items": [
                        {
                            "productId": item.product_id,
                            "unitPrice": float(item.unit_price),
                            "quantity": item.quantity,
                            "totalPrice": float(item.total_price),
                        }
                        for item in cart.items
                    ],
                    "totalPrice": float(cart.total_price),
                },
                headers={"Idempotency-Key": idempotency_key(cart)},
            )
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("Order creation request for shopping cart %s failed: %s", cart.id, e)
            return False
        logger.info("Requested order creation for shopping cart %s", cart.id)
        return True
