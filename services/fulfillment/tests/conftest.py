"""Pytest fixtures for the order fulfillment workflow."""

import asyncio
import json
import logging
from datetime import datetime, timezone

import httpx
import pytest
from fastapi.testclient import TestClient

from fulfillment.auth import AuthVerifier
from fulfillment.config import FulfillmentConfig
from fulfillment.logs import RequestLogger
from fulfillment.main import create_app
from fulfillment.notifications import NotificationDispatcher
from fulfillment.orchestrator import OrderFulfillmentOrchestrator

SUPABASE_URL = "https://project.supabase.test"
LOOPS_URL = "https://loops.test/api/v1/transactional"
VALID_TOKEN = "valid-token"


class FakeStore:
    """
    In-memory stand-in for FulfillmentStore.

    fail(op) makes the named operation raise; times limits how many calls fail.
    delay(op, seconds) makes the operation sleep before completing.
    """

    def __init__(self) -> None:
        self.orders: dict[str, dict] = {}
        self.order_items: list[dict] = []
        self.coupon_usage: list[dict] = []
        self.coupon_counts: dict[str, int] = {}
        self.stock: dict[str, dict] = {}
        self.carts: dict[str, str] = {}  # cart_id -> user_id
        self.cart_items: dict[str, list[str]] = {}  # cart_id -> kit ids
        self.kit_rows: list[dict] = [{"registration_count": 0, "kit_codes": []}]
        self.calls: list[str] = []
        self._failures: dict[str, list] = {}
        self._delays: dict[str, float] = {}
        self._next_number = 1000

    # ── test helpers ──────────────────────────────

    def fail(self, op: str, message: str = "boom", times: int | None = None) -> None:
        self._failures[op] = [times, message]

    def delay(self, op: str, seconds: float) -> None:
        self._delays[op] = seconds

    def add_cart(self, cart_id: str, user_id: str, items: list[str]) -> None:
        self.carts[cart_id] = user_id
        self.cart_items[cart_id] = list(items)

    def items_for(self, user_id: str) -> list[str]:
        return [
            kit
            for cart_id, owner in self.carts.items()
            if owner == user_id
            for kit in self.cart_items.get(cart_id, [])
        ]

    async def _enter(self, op: str) -> None:
        self.calls.append(op)
        if op in self._delays:
            await asyncio.sleep(self._delays[op])
        failure = self._failures.get(op)
        if failure is None:
            return
        remaining, message = failure
        if remaining is not None:
            if remaining <= 0:
                return
            failure[0] = remaining - 1
        raise RuntimeError(f"{op} failed: {message}")

    # ── store interface ───────────────────────────

    async def insert_order(self, row: dict) -> dict:
        await self._enter("insert_order")
        self._next_number += 1
        created = {
            **row,
            "order_number": f"ORD-{self._next_number}",
            "created_at": datetime(2026, 10, 19, 18, 30, tzinfo=timezone.utc),
        }
        self.orders[row["id"]] = created
        return dict(created)

    async def insert_order_items(self, rows: list[dict]) -> None:
        await self._enter("insert_order_items")
        self.order_items.extend(rows)

    async def delete_order(self, order_id: str) -> None:
        await self._enter("delete_order")
        self.orders.pop(order_id, None)

    async def insert_coupon_usage(self, coupon_id, user_id, order_id, discount_amount) -> None:
        await self._enter("insert_coupon_usage")
        self.coupon_usage.append(
            {
                "coupon_id": coupon_id,
                "user_id": user_id,
                "order_id": order_id,
                "discount_amount": discount_amount,
            }
        )

    async def increment_coupon_usage(self, coupon_id: str) -> None:
        await self._enter("increment_coupon_usage")
        self.coupon_counts[coupon_id] = self.coupon_counts.get(coupon_id, 0) + 1

    async def reduce_stock(self, kit_id: str, quantity: int) -> dict:
        await self._enter(f"reduce_stock:{kit_id}")
        kit = self.stock.setdefault(kit_id, {"name": kit_id, "quantity": 100})
        kit["quantity"] -= quantity
        return dict(kit)

    async def delete_user_cart_items(self, user_id: str) -> int:
        await self._enter("delete_user_cart_items")
        deleted = 0
        for cart_id, owner in self.carts.items():
            if owner == user_id:
                deleted += len(self.cart_items.get(cart_id, []))
                self.cart_items[cart_id] = []
        return deleted

    async def create_kit_registrations(self, order_id: str) -> list[dict]:
        await self._enter("create_kit_registrations")
        return self.kit_rows

    async def find_cart_ids(self, user_id: str) -> list[str]:
        await self._enter("find_cart_ids")
        return [cart_id for cart_id, owner in self.carts.items() if owner == user_id]

    async def delete_cart_items(self, cart_ids: list[str]) -> int:
        await self._enter("delete_cart_items")
        deleted = 0
        for cart_id in cart_ids:
            deleted += len(self.cart_items.get(cart_id, []))
            self.cart_items[cart_id] = []
        return deleted

    async def delete_carts(self, user_id: str) -> int:
        await self._enter("delete_carts")
        owned = [cart_id for cart_id, owner in self.carts.items() if owner == user_id]
        for cart_id in owned:
            del self.carts[cart_id]
            self.cart_items.pop(cart_id, None)
        return len(owned)


class FakeServices:
    """httpx.MockTransport handler for Supabase Auth and the Loops API."""

    def __init__(self) -> None:
        self.emails: list[dict] = []
        self.email_status: dict[str, int] = {}
        self.auth_status = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/auth/v1/user":
            token = request.headers.get("authorization", "")
            if self.auth_status != 200 or token != f"Bearer {VALID_TOKEN}":
                return httpx.Response(401, json={"message": "invalid JWT"})
            return httpx.Response(200, json={"id": "user-1", "email": "buyer@example.com"})

        if str(request.url) == LOOPS_URL:
            payload = json.loads(request.content)
            self.emails.append(payload)
            status = self.email_status.get(payload["email"], 200)
            if status >= 400:
                return httpx.Response(status, json={"message": "template not found"})
            return httpx.Response(200, json={"success": True})

        return httpx.Response(404)


@pytest.fixture
def config() -> FulfillmentConfig:
    return FulfillmentConfig(
        database_url="postgresql+asyncpg://test/test",
        supabase_url=SUPABASE_URL,
        supabase_service_key="service-key",
        loops_api_key="loops-key",
        loops_api_url=LOOPS_URL,
        retry_backoff_ms=0,
        retry_backoff_cap_ms=0,
    )


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def services() -> FakeServices:
    return FakeServices()


@pytest.fixture
def http_client(services) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(services.handler))


@pytest.fixture
def log() -> RequestLogger:
    return RequestLogger(logging.getLogger("tests"), "test01")


@pytest.fixture
def orchestrator(config, store, http_client) -> OrderFulfillmentOrchestrator:
    auth = AuthVerifier(http_client, SUPABASE_URL, "service-key", config.auth_timeout_ms)
    return OrderFulfillmentOrchestrator(config, store, auth)


@pytest.fixture
def client(config, orchestrator, http_client) -> TestClient:
    app = create_app(
        config,
        orchestrator=orchestrator,
        dispatcher=NotificationDispatcher(http_client, config),
    )
    return TestClient(app)


@pytest.fixture
def auth_headers() -> dict:
    return {"Authorization": f"Bearer {VALID_TOKEN}"}


def make_payload(**overrides) -> dict:
    payload = {
        "shipping_address": {
            "firstName": "Jane",
            "lastName": "Doe",
            "address": "123 Main St",
            "city": "Ottawa",
            "province": "ON",
            "postalCode": "K1A 0B1",
            "email": "jane@example.com",
        },
        "billing_address": {
            "firstName": "Jane",
            "lastName": "Doe",
            "address": "123 Main St",
            "city": "Ottawa",
            "province": "ON",
            "postalCode": "K1A 0B1",
        },
        "items": [
            {
                "test_kit_id": "kit-basic",
                "quantity": 1,
                "unit_price": 15.0,
                "product_name": "Basic Water Test",
            },
            {
                "test_kit_id": "kit-advanced",
                "quantity": 1,
                "unit_price": 30.0,
                "product_name": "Advanced Water Test",
                "product_description": "Metals and bacteria",
            },
        ],
        "subtotal": 45.0,
        "discount_amount": 0,
        "tax_amount": 0,
        "shipping_cost": 0,
        "total_amount": 45.0,
        "payment_reference": "PAYPAL-123",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def payload() -> dict:
    return make_payload()


@pytest.fixture
def free_payload() -> dict:
    return make_payload(
        subtotal=45.0,
        discount_amount=45.0,
        total_amount=0,
        is_free_order=True,
        coupon_code="FREEKIT",
        coupon_id="coupon-1",
        payment_reference=None,
    )
