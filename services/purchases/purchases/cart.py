"""
Purchases Service — ショッピングカート集約 (Cart Aggregate)

カートの状態は Event Processor だけが変更する (single writer)。
コマンド側はこのモデルからイベントを組み立てるだけで、永続化はしない。

状態遷移:
    (absent) → ACTIVE     (CartCreationRequested)
    ACTIVE   → ACTIVE     (CartItemsUpdateRequested)
    ACTIVE   → COMPLETED  (CartCompletionRequested, 合計金額一致時のみ)
    *        → (absent)   (CartDeletionRequested)
"""

import json
import uuid
from decimal import Decimal


def new_cart_id() -> int:
    """カート ID を採番する (正の 63bit 整数、BIGINT に収まる)。"""
    return uuid.uuid4().int >> 65


def to_decimal(value) -> Decimal:
    # float は repr 経由で変換し、2 進表現の誤差を持ち込まない
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class Item:
    """カート明細。total_price は常に unit_price * quantity。"""

    def __init__(self, product_id: int, unit_price, quantity: int) -> None:
        self.product_id = product_id
        self.unit_price = to_decimal(unit_price)
        self.quantity = quantity
        self.total_price = self.unit_price * quantity

    def update(self, unit_price, quantity: int) -> None:
        self.unit_price = to_decimal(unit_price)
        self.quantity = quantity
        self.total_price = self.unit_price * quantity

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "unit_price": str(self.unit_price),
            "quantity": self.quantity,
            "total_price": str(self.total_price),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Item":
        return cls(data["product_id"], data["unit_price"], data["quantity"])

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Item):
            return NotImplemented
        return (
            self.product_id == other.product_id
            and self.unit_price == other.unit_price
            and self.quantity == other.quantity
        )

    def __repr__(self) -> str:
        return (
            f"Item(product_id={self.product_id}, unit_price={self.unit_price}, "
            f"quantity={self.quantity}, total_price={self.total_price})"
        )


class Cart:
    """
    ショッピングカート集約。

    total_price は上流コマンドから渡された値を保持する。
    Processor は完了時にこの値とイベントの値を照合するだけで、再計算はしない。
    """

    def __init__(
        self,
        id: int | None,
        user_id: int,
        items: list[Item] | None = None,
        total_price=Decimal("0"),
        completed: bool = False,
    ) -> None:
        self.id = id
        self.user_id = user_id
        self.items: list[Item] = list(items or [])
        self.total_price: Decimal = to_decimal(total_price)
        self.completed = completed

    @classmethod
    def from_items(cls, user_id: int, items: list[Item], id: int | None = None) -> "Cart":
        """明細から合計金額を導出してカートを作る (コマンド側で使用)。"""
        total = sum((item.total_price for item in items), Decimal("0"))
        return cls(id=id, user_id=user_id, items=items, total_price=total)

    # ── 状態遷移 ──────────────────────────────────────

    def replace_items(self, items: list[Item], total_price) -> None:
        self.items = list(items)
        self.total_price = to_decimal(total_price)

    def complete(self) -> None:
        self.completed = True

    def matches_total(self, total_price) -> bool:
        """保存済み合計とイベントの合計を Decimal で厳密比較する。"""
        return self.total_price == to_decimal(total_price)

    # ── 永続化用変換 ─────────────────────────────────

    def items_json(self) -> str:
        return json.dumps([item.to_dict() for item in self.items])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "items": [item.to_dict() for item in self.items],
            "total_price": str(self.total_price),
            "completed": self.completed,
        }

    @classmethod
    def from_row(cls, row) -> "Cart":
        items = json.loads(row.items) if isinstance(row.items, str) else row.items
        return cls(
            id=row.id,
            user_id=row.user_id,
            items=[Item.from_dict(i) for i in items or []],
            total_price=row.total_price,
            completed=row.completed,
        )

    def __repr__(self) -> str:
        return (
            f"Cart(id={self.id}, user_id={self.user_id}, items={self.items}, "
            f"total_price={self.total_price}, completed={self.completed})"
        )
