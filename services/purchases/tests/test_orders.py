"""Tests for the HTTP order trigger"""
import json

import httpx
import pytest

from purchases.cart import Cart, Item
from purchases.orders import HttpOrderUseCase


def completed_cart():
    cart = Cart.from_items(1, [Item(7, "10.0", 3)], id=42)
    cart.complete()
    return cart


@pytest.mark.asyncio
async def test_posts_snapshot_with_idempotency_key():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(201, json={"status": "PENDING"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        assert await HttpOrderUseCase(client, "http://orders/").create(completed_cart()) is True

    request = requests[0]
    assert request.url == "http://orders/commands/orders"
    assert request.headers["Idempotency-Key"] == "shopping-cart-42"
    body = json.loads(request.content)
    assert body["shoppingCartId"] == 42
    assert body["totalPrice"] == 30.0
    assert body["items"][0]["totalPrice"] == 30.0


@pytest.mark.asyncio
async def test_http_failure_is_reported_not_raised():
    def handler(request):
        return httpx.Response(503)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        assert await HttpOrderUseCase(client, "http://orders").create(completed_cart()) is False
