"""
Purchases Service — カートストア

カート行を PostgreSQL に保存する。主キー (id) と
「ユーザーごとに未完了カートは 1 つ」という一意条件で引ける。

total_price は精度・スケールを指定しない NUMERIC。上流から渡された値を丸めずに保持し、
完了時の厳密比較がそのまま成立するようにする。

一意条件の本当の保証は部分一意インデックス (user_id WHERE NOT completed)。
アプリ側の事前チェックは最適化にすぎず、同時に 2 件の作成要求が来た場合は
インデックス違反 (IntegrityError) で検知する。
"""

from collections.abc import AsyncIterator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession
from sqlalchemy.orm import sessionmaker

from .cart import Cart

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS shopping_carts (
        id          BIGINT PRIMARY KEY,
        user_id     INTEGER NOT NULL,
        items       JSONB NOT NULL DEFAULT '[]'::jsonb,
        total_price NUMERIC NOT NULL,
        completed   BOOLEAN NOT NULL DEFAULT FALSE,
        created_at  TIMESTAMPTZ NOT NULL,
        updated_at  TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_shopping_carts_incomplete_user
        ON shopping_carts (user_id) WHERE NOT completed
    """,
    # 旧スキーマ NUMERIC(12, 2) で作られたテーブルも精度指定なしに揃える
    "ALTER TABLE shopping_carts ALTER COLUMN total_price TYPE NUMERIC",
)


class IncompleteCartExists(Exception):
    """同じユーザーの未完了カートが既に存在する (一意インデックス違反)"""


class CartStore(Protocol):
    async def find_incomplete_by_user(self, user_id: int) -> Cart | None: ...

    async def find_by_id(self, cart_id: int, for_update: bool = False) -> Cart | None: ...

    async def find_by_id_and_user(self, cart_id: int, user_id: int) -> Cart | None: ...

    async def save(self, cart: Cart) -> None: ...

    async def delete_by_id(self, cart_id: int) -> bool: ...

    async def commit(self) -> None: ...


StoreFactory = Callable[[], AbstractAsyncContextManager[CartStore]]


class SqlCartStore:
    """AsyncSession 上の CartStore 実装。コミットは呼び出し側が明示する。"""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def find_incomplete_by_user(self, user_id: int) -> Cart | None:
        result = await self.session.execute(
            text("""
                SELECT id, user_id, items, total_price, completed
                FROM shopping_carts
                WHERE user_id = :user_id AND completed = FALSE
            """),
            {"user_id": user_id},
        )
        row = result.fetchone()
        return Cart.from_row(row) if row else None

    async def find_by_id(self, cart_id: int, for_update: bool = False) -> Cart | None:
        # FOR UPDATE: read-modify-write の間、ハンドラが行を専有する
        sql = """
            SELECT id, user_id, items, total_price, completed
            FROM shopping_carts
            WHERE id = :id
        """
        if for_update:
            sql += " FOR UPDATE"
        result = await self.session.execute(text(sql), {"id": cart_id})
        row = result.fetchone()
        return Cart.from_row(row) if row else None

    async def find_by_id_and_user(self, cart_id: int, user_id: int) -> Cart | None:
        result = await self.session.execute(
            text("""
                SELECT id, user_id, items, total_price, completed
                FROM shopping_carts
                WHERE id = :id AND user_id = :user_id
            """),
            {"id": cart_id, "user_id": user_id},
        )
        row = result.fetchone()
        return Cart.from_row(row) if row else None

    async def save(self, cart: Cart) -> None:
        """
        id で UPSERT する。

        未完了カートの一意インデックスに違反した場合はロールバックして
        IncompleteCartExists を送出する。
        """
        now = datetime.now(timezone.utc)
        try:
            await self.session.execute(
                text("""
                    INSERT INTO shopping_carts
                        (id, user_id, items, total_price, completed, created_at, updated_at)
                    VALUES
                        (:id, :user_id, CAST(:items AS JSONB), :total_price, :completed, :now, :now)
                    ON CONFLICT (id) DO UPDATE SET
                        items = EXCLUDED.items,
                        total_price = EXCLUDED.total_price,
                        completed = EXCLUDED.completed,
                        updated_at = EXCLUDED.updated_at
                """),
                {
                    "id": cart.id,
                    "user_id": cart.user_id,
                    "items": cart.items_json(),
                    "total_price": cart.total_price,
                    "completed": cart.completed,
                    "now": now,
                },
            )
        except IntegrityError as e:
            await self.session.rollback()
            raise IncompleteCartExists(
                f"User {cart.user_id} already has an incomplete shopping cart"
            ) from e

    async def delete_by_id(self, cart_id: int) -> bool:
        result = await self.session.execute(
            text("DELETE FROM shopping_carts WHERE id = :id"),
            {"id": cart_id},
        )
        return result.rowcount > 0

    async def commit(self) -> None:
        await self.session.commit()


@asynccontextmanager
async def open_cart_store(session_factory: sessionmaker) -> AsyncIterator[SqlCartStore]:
    """新しいセッションに紐づいたストアを返す。未コミットの変更は破棄される。"""
    async with session_factory() as session:
        yield SqlCartStore(session)


async def create_schema(engine: AsyncEngine) -> None:
    """起動時にテーブルとインデックスを作成する (存在すれば何もしない)。"""
    async with engine.begin() as conn:
        for ddl in SCHEMA:
            await conn.execute(text(ddl))
