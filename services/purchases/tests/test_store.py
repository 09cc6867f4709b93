"""Tests for the SQL cart store"""
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import IntegrityError

from purchases.cart import Cart, Item
from purchases.store import SCHEMA, IncompleteCartExists, SqlCartStore


@pytest.fixture
def session():
    return AsyncMock()


def test_total_price_column_is_unconstrained_numeric():
    ddl = " ".join(SCHEMA)

    assert "total_price NUMERIC NOT NULL" in ddl
    assert "NUMERIC(" not in SCHEMA[0]
    assert "ALTER COLUMN total_price TYPE NUMERIC" in ddl


@pytest.mark.asyncio
async def test_save_binds_total_without_rounding(session):
    store = SqlCartStore(session)
    cart = Cart.from_items(1, [Item(7, "3.335", 3)], id=5)

    await store.save(cart)

    params = session.execute.await_args.args[1]
    assert params["total_price"] == Decimal("10.005")
    assert params["id"] == 5


@pytest.mark.asyncio
async def test_save_binds_totals_beyond_ten_digits(session):
    store = SqlCartStore(session)
    cart = Cart(6, 1, total_price="12345678901.25")

    await store.save(cart)

    assert session.execute.await_args.args[1]["total_price"] == Decimal("12345678901.25")


def test_loaded_total_matches_exactly():
    row = SimpleNamespace(
        id=5, user_id=1, items="[]", total_price=Decimal("10.005"), completed=False
    )

    cart = Cart.from_row(row)

    assert cart.matches_total(10.005)
    assert not cart.matches_total(10.01)


@pytest.mark.asyncio
async def test_index_violation_becomes_incomplete_cart_exists(session):
    session.execute.side_effect = IntegrityError("INSERT", {}, Exception("duplicate key"))
    store = SqlCartStore(session)

    with pytest.raises(IncompleteCartExists):
        await store.save(Cart.from_items(1, [], id=7))

    session.rollback.assert_awaited_once()
