"""
Purchases Service — イベント定義

カートへの変更要求はすべてイベントとしてバスに流れる。
イベントは「要求された」事実 (…Requested) として命名し、不変として扱う。

ワイヤ形式は camelCase の JSON。金額は JSON の number で送り、
受信側では Decimal として読む。
"""

from decimal import Decimal
from typing import Annotated

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, PlainSerializer

from .cart import Cart, Item, to_decimal

# JSON では number、Python 側では Decimal (float は repr 経由で変換)
Price = Annotated[
    Decimal,
    BeforeValidator(lambda v: to_decimal(v) if isinstance(v, float) else v),
    PlainSerializer(float, return_type=float, when_used="json"),
]


class CartEvent(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    def partition_key(self) -> int:
        return self.id

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


class ItemPayload(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    product_id: int = Field(alias="productId")
    unit_price: Price = Field(alias="unitPrice")
    quantity: int

    @classmethod
    def from_item(cls, item: Item) -> "ItemPayload":
        return cls(
            product_id=item.product_id,
            unit_price=item.unit_price,
            quantity=item.quantity,
        )

    def to_item(self) -> Item:
        return Item(self.product_id, self.unit_price, self.quantity)


class CartCreationRequested(CartEvent):
    """カート作成が要求された"""
    id: int | None = None
    user_id: int = Field(alias="userId")
    items: list[ItemPayload] = []
    total_price: Price | None = Field(default=None, alias="totalPrice")

    def partition_key(self) -> int:
        # 同一ユーザーの作成要求を同じパーティションに揃える
        return self.user_id

    def to_cart(self) -> Cart:
        items = [i.to_item() for i in self.items]
        if self.total_price is None:
            return Cart.from_items(self.user_id, items, id=self.id)
        return Cart(self.id, self.user_id, items, self.total_price)


class CartItemsUpdateRequested(CartEvent):
    """カート明細の更新が要求された"""
    id: int
    items: list[ItemPayload]
    total_price: Price = Field(alias="totalPrice")


class CartCompletionRequested(CartEvent):
    """カートの完了 (購入確定) が要求された"""
    id: int
    total_price: Price = Field(alias="totalPrice")


class CartDeletionRequested(CartEvent):
    """カートの削除が要求された"""
    id: int
