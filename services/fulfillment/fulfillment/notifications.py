"""
Fulfillment Service — Notification Dispatcher

顧客向けの注文確認メール (メールアドレスがある場合のみ) と
管理者向けの注文通知 (常に) を組み立て、Loops のトランザクションメール API に送る。

送信はレスポンス返却後のバックグラウンドタスクで行う (fire-and-forget)。
2通は独立しており、片方の失敗がもう片方の送信を妨げることはない。
結果はログにだけ残り、リクエストの結果には影響しない。
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from .config import FulfillmentConfig
from .errors import NotificationError
from .logs import RequestLogger
from .schemas import Address, OrderItemRequest, OrderRequest, StoredOrder

logger = logging.getLogger(__name__)


def format_cad(amount: float) -> str:
    """en-CA の CAD 表記 ($1,234.50)"""
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


def format_items(items: list[OrderItemRequest]) -> str:
    if not items:
        return "No items listed"
    return "\n".join(
        f"• {item.product_name} (Qty: {item.quantity}) - {format_cad(item.unit_price)} each"
        for item in items
    )


def format_shipping_block(address: Address | None) -> str:
    if address is None:
        return "Not provided"
    lines = [
        f"{address.firstName or ''} {address.lastName or ''}".strip(),
        address.address or "",
        f"{address.city or ''}, {address.province or ''} {address.postalCode or ''}".strip(),
        address.country or "Canada",
        f"Email: {address.email or ''}",
    ]
    if address.phone:
        lines.append(f"Phone: {address.phone}")
    return "\n".join(lines)


@dataclass(slots=True)
class NotificationJob:
    """1回限りの送信依頼 (永続化しない)"""

    order: StoredOrder
    request: OrderRequest
    kit_codes: list[str] = field(default_factory=list)
    log: RequestLogger | None = None


class LoopsClient:
    """Loops トランザクションメール API"""

    def __init__(self, client: httpx.AsyncClient, api_key: str, api_url: str):
        self.client = client
        self.api_key = api_key
        self.api_url = api_url

    async def send(self, transactional_id: str, email: str, data_variables: dict) -> None:
        resp = await self.client.post(
            self.api_url,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "transactionalId": transactional_id,
                "email": email,
                "dataVariables": data_variables,
            },
        )
        if resp.is_success:
            return
        try:
            message = resp.json().get("message") or resp.text
        except ValueError:
            message = resp.text or f"HTTP {resp.status_code}"
        raise NotificationError(resp.status_code, message)


class NotificationDispatcher:
    def __init__(self, client: httpx.AsyncClient, config: FulfillmentConfig):
        self.config = config
        self.loops = (
            LoopsClient(client, config.loops_api_key, config.loops_api_url)
            if config.loops_api_key
            else None
        )

    def _local_time(self, order: StoredOrder) -> datetime:
        created = order.created_at or datetime.now(timezone.utc)
        if created.tzinfo is None:
            created = created.replace(tzinfo=timezone.utc)
        try:
            return created.astimezone(ZoneInfo(self.config.timezone))
        except ZoneInfoNotFoundError:
            logger.warning("Unknown timezone %s, using UTC", self.config.timezone)
            return created

    # ── ペイロード組み立て ───────────────────────────

    def customer_payload(self, job: NotificationJob) -> dict:
        order, request = job.order, job.request
        return {
            "firstName": request.shipping_address.firstName or "Valued Customer",
            "orderNumber": order.order_number,
            "orderTotal": format_cad(order.total_amount),
            "orderItems": format_items(request.items),
            "dashboardLink": f"{self.config.app_url}/dashboard",
            "orderDate": self._local_time(order).strftime("%Y-%m-%d"),
            "orderStatus": order.status or "confirmed",
            "couponApplied": order.coupon_code or "None",
        }

    def admin_payload(self, job: NotificationJob) -> dict:
        order, request = job.order, job.request
        address = request.shipping_address
        customer_name = f"{address.firstName or ''} {address.lastName or ''}".strip()
        return {
            "customerName": customer_name or "Not provided",
            "orderNumber": order.order_number,
            "orderDate": self._local_time(order).strftime("%B %d, %Y, %I:%M %p"),
            "orderTotal": format_cad(order.total_amount),
            "customerEmail": address.email or "Not provided",
            "shippingAddress": format_shipping_block(address),
            "kitCode": ", ".join(job.kit_codes) if job.kit_codes else "Not generated",
            "orderItems": format_items(request.items),
            "totalAmount": order.total_amount,
            "paymentMethod": order.payment_method or request.payment_method or "PayPal",
            "orderStatus": order.status or "confirmed",
            "specialInstructions": request.special_instructions or "None provided",
            "couponApplied": order.coupon_code or "None",
        }

    # ── 送信 ─────────────────────────────────────────

    async def dispatch(self, job: NotificationJob) -> dict[str, bool]:
        """
        顧客メールと管理者メールを送る。例外は送出しない。

        戻り値は送信を試みた通知ごとの成否 (テストとログ用)。
        """
        log = (job.log or RequestLogger(logger, "-")).bind(logger)
        if self.loops is None:
            log.warning("Loops API key not configured, skipping all email notifications")
            return {}

        outcome = {}
        customer_email = job.request.customer_email
        if customer_email:
            outcome["customer"] = await self._send(
                "customer confirmation",
                self.config.customer_template_id,
                customer_email,
                self.customer_payload(job),
                job,
                log,
            )
        else:
            log.warning("No customer email found, skipping customer confirmation email")

        outcome["admin"] = await self._send(
            "admin notification",
            self.config.admin_template_id,
            self.config.admin_email,
            self.admin_payload(job),
            job,
            log,
        )
        return outcome

    async def _send(
        self,
        label: str,
        template_id: str,
        email: str,
        variables: dict,
        job: NotificationJob,
        log: RequestLogger,
    ) -> bool:
        log.info("Sending %s email for order %s to %s", label, job.order.order_number, email)
        try:
            await self.loops.send(template_id, email, variables)
        except Exception as e:
            log.warning(
                "Failed to send %s email for order %s (non-critical): %s",
                label, job.order.order_number, e,
            )
            return False
        log.info("Sent %s email for order %s", label, job.order.order_number)
        return True
