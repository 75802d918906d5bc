"""Tests for the Notification Dispatcher."""
import asyncio
from datetime import datetime, timezone

import httpx
from conftest import make_payload

from fulfillment.config import FulfillmentConfig
from fulfillment.notifications import NotificationDispatcher, NotificationJob, format_cad
from fulfillment.schemas import OrderRequest, StoredOrder


def _job(log, kit_codes=None, **overrides):
    request = OrderRequest.model_validate(make_payload(**overrides))
    order = StoredOrder(
        id="order-1",
        order_number="ORD-1001",
        user_id="user-1",
        status="confirmed",
        payment_status="paid",
        total_amount=request.total_amount,
        coupon_code=request.coupon_code,
        payment_method="paypal",
        created_at=datetime(2026, 10, 19, 18, 30, tzinfo=timezone.utc),
    )
    return NotificationJob(order=order, request=request, kit_codes=kit_codes or [], log=log)


def test_sends_customer_and_admin_emails(config, http_client, services, log):
    dispatcher = NotificationDispatcher(http_client, config)

    outcome = asyncio.run(dispatcher.dispatch(_job(log, kit_codes=["MWQ-A1", "MWQ-B2"])))

    assert outcome == {"customer": True, "admin": True}
    customer, admin = services.emails
    assert customer["transactionalId"] == config.customer_template_id
    assert customer["email"] == "jane@example.com"
    assert customer["dataVariables"]["firstName"] == "Jane"
    assert customer["dataVariables"]["orderTotal"] == "$45.00"
    assert customer["dataVariables"]["orderDate"] == "2026-10-19"
    assert customer["dataVariables"]["couponApplied"] == "None"
    assert "• Basic Water Test (Qty: 1) - $15.00 each" in customer["dataVariables"]["orderItems"]

    assert admin["transactionalId"] == config.admin_template_id
    assert admin["email"] == "orders@mywaterquality.ca"
    assert admin["dataVariables"]["kitCode"] == "MWQ-A1, MWQ-B2"
    assert admin["dataVariables"]["customerName"] == "Jane Doe"
    assert admin["dataVariables"]["specialInstructions"] == "None provided"
    assert "Canada" in admin["dataVariables"]["shippingAddress"]


def test_customer_failure_does_not_block_admin(config, http_client, services, log):
    services.email_status["jane@example.com"] = 400
    dispatcher = NotificationDispatcher(http_client, config)

    outcome = asyncio.run(dispatcher.dispatch(_job(log)))

    assert outcome == {"customer": False, "admin": True}
    assert [email["email"] for email in services.emails] == [
        "jane@example.com",
        "orders@mywaterquality.ca",
    ]


def test_admin_only_when_no_customer_email(config, http_client, services, log):
    payload = make_payload()
    payload["shipping_address"].pop("email")
    dispatcher = NotificationDispatcher(http_client, config)

    outcome = asyncio.run(dispatcher.dispatch(_job(log, shipping_address=payload["shipping_address"])))

    assert outcome == {"admin": True}
    assert services.emails[0]["dataVariables"]["kitCode"] == "Not generated"
    assert services.emails[0]["dataVariables"]["customerEmail"] == "Not provided"


def test_missing_api_key_skips_everything(http_client, services, log):
    dispatcher = NotificationDispatcher(http_client, FulfillmentConfig())

    outcome = asyncio.run(dispatcher.dispatch(_job(log)))

    assert outcome == {}
    assert services.emails == []


def test_transport_errors_are_swallowed(config, log):
    def refuse(request):
        raise httpx.ConnectError("connection refused")

    client = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
    outcome = asyncio.run(NotificationDispatcher(client, config).dispatch(_job(log)))

    assert outcome == {"customer": False, "admin": False}


def test_format_cad():
    assert format_cad(0) == "$0.00"
    assert format_cad(1234.5) == "$1,234.50"
