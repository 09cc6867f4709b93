"""Tests for the cart command adapter"""
import json
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from purchases.cart import Cart, Item
from purchases.commands import CartCommandAdapter


@pytest.fixture
def publisher():
    return AsyncMock()


@pytest.fixture
def adapter(publisher, store, topics):
    return CartCommandAdapter(publisher, store.factory(), topics)


def sent(publisher):
    channel, payload, key = publisher.send.await_args.args
    return channel, json.loads(payload), key


@pytest.mark.asyncio
async def test_create_publishes_creation_event(adapter, publisher, store, topics):
    cart = Cart.from_items(1, [Item(7, "10.0", 2)])

    assert await adapter.create(cart) is True

    channel, payload, key = sent(publisher)
    assert channel == topics.create
    assert key == 1
    assert payload == {
        "id": cart.id,
        "userId": 1,
        "items": [{"productId": 7, "unitPrice": 10.0, "quantity": 2}],
        "totalPrice": 20.0,
    }
    assert store.rows == {}


@pytest.mark.asyncio
async def test_create_keeps_existing_id(adapter, publisher):
    cart = Cart.from_items(1, [], id=77)

    await adapter.create(cart)

    assert sent(publisher)[1]["id"] == 77


@pytest.mark.asyncio
async def test_update_items_publishes_items_and_total(adapter, publisher, topics):
    cart = Cart.from_items(1, [Item(7, "10.0", 3)], id=5)

    await adapter.update_items(cart)

    channel, payload, key = sent(publisher)
    assert channel == topics.update_items
    assert key == 5
    assert payload["totalPrice"] == 30.0
    assert payload["items"][0]["quantity"] == 3


@pytest.mark.asyncio
async def test_complete_publishes_id_and_total(adapter, publisher, topics):
    await adapter.complete(Cart.from_items(1, [Item(7, "2.5", 2)], id=5))

    assert sent(publisher) == (topics.complete, {"id": 5, "totalPrice": 5.0}, 5)


@pytest.mark.asyncio
async def test_delete_publishes_id(adapter, publisher, topics):
    await adapter.delete(5)

    assert sent(publisher) == (topics.delete, {"id": 5}, 5)


@pytest.mark.asyncio
async def test_publish_failure_is_swallowed(adapter, publisher, caplog):
    publisher.send.side_effect = RedisConnectionError("connection refused")

    assert await adapter.delete(5) is False
    assert "Error sending CartDeletionRequested" in caplog.text


@pytest.mark.asyncio
async def test_reads_bypass_the_bus(adapter, publisher, active_cart):
    assert (await adapter.get_incomplete_by_user(1)).id == active_cart.id
    assert (await adapter.get_by_id_and_user(active_cart.id, 1)).id == active_cart.id
    assert await adapter.get_by_id_and_user(active_cart.id, 2) is None
    publisher.send.assert_not_awaited()
