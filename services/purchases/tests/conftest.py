"""Pytest configuration and fixtures"""
import asyncio
import copy
from contextlib import asynccontextmanager

import pytest

from purchases.cart import Cart, Item
from purchases.config import Topics
from purchases.processor import CartEventProcessor
from purchases.store import IncompleteCartExists


class InMemoryCartStore:
    """
    Dict-backed cart store. save() enforces the one-incomplete-cart-per-user
    index; reads yield to the event loop so concurrent handlers interleave.
    """

    def __init__(self):
        self.rows: dict[int, Cart] = {}
        self.commits = 0

    async def find_incomplete_by_user(self, user_id):
        await asyncio.sleep(0)
        for cart in self.rows.values():
            if cart.user_id == user_id and not cart.completed:
                return copy.deepcopy(cart)
        return None

    async def find_by_id(self, cart_id, for_update=False):
        await asyncio.sleep(0)
        cart = self.rows.get(cart_id)
        return copy.deepcopy(cart) if cart else None

    async def find_by_id_and_user(self, cart_id, user_id):
        cart = await self.find_by_id(cart_id)
        return cart if cart and cart.user_id == user_id else None

    async def save(self, cart):
        if not cart.completed:
            for other in self.rows.values():
                if other.id != cart.id and other.user_id == cart.user_id and not other.completed:
                    raise IncompleteCartExists(
                        f"User {cart.user_id} already has an incomplete shopping cart"
                    )
        self.rows[cart.id] = copy.deepcopy(cart)

    async def delete_by_id(self, cart_id):
        return self.rows.pop(cart_id, None) is not None

    async def commit(self):
        self.commits += 1

    def factory(self):
        @asynccontextmanager
        async def open_store():
            yield self

        return open_store


class RecordingOrderTrigger:
    def __init__(self, succeed=True):
        self.calls: list[Cart] = []
        self.succeed = succeed

    async def create(self, cart):
        self.calls.append(copy.deepcopy(cart))
        return self.succeed


@pytest.fixture
def store():
    return InMemoryCartStore()


@pytest.fixture
def order_trigger():
    return RecordingOrderTrigger()


@pytest.fixture
def topics():
    return Topics()


@pytest.fixture
def processor(store, order_trigger):
    return CartEventProcessor(store.factory(), order_trigger)


@pytest.fixture
def active_cart(store):
    """User 1's active cart: 2 x product 7 at 10.0"""
    cart = Cart.from_items(1, [Item(7, "10.0", 2)], id=100)
    store.rows[cart.id] = cart
    return cart
