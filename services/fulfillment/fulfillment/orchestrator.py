"""
Fulfillment Service — Workflow Orchestrator

検証済みのチェックアウトを永続的な注文レコードに変え、
独立して失敗しうる副作用を調整する。

  Validating → Authenticating → Creating Order (失敗は致命的)
    → {Recording Coupon, Reducing Inventory} (並列・ベストエフォート)
    → Provisioning Kits (ベストエフォート)
    → Reconciling Cart (ベストエフォート・同期)
    → Publishing Event (ベストエフォート)
    → Responding  (+ 通知はレスポンス後にバックグラウンドで送信)

非 2xx を返すのは検証失敗 (400)・認証失敗 (401)・設定不備と注文作成の
失敗 (500) だけ。注文ヘッダーと明細がコミットされた時点で注文は確定し、
以降のステップの失敗はログに残るだけで成功レスポンスは変わらない。
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass

from pydantic import ValidationError

from .auth import AuthVerifier
from .cart import CartReconciler
from .config import FulfillmentConfig
from .coupons import record_coupon_usage
from .errors import AuthenticationError, CartClearError, OperationTimeout, OrderCreationError
from .events import EventPublisher, FulfillmentLog
from .inventory import reduce_inventory
from .kits import provision_kit_registrations
from .logs import RequestLogger
from .notifications import NotificationJob
from .order_writer import RetryingOrderWriter
from .responses import error_body, new_request_id, success_body
from .schemas import OrderRequest, validate_order_payload
from .store import FulfillmentStore
from .timeouts import with_timeout

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkflowResponse:
    status_code: int
    body: dict
    notification: NotificationJob | None = None


class OrderFulfillmentOrchestrator:
    """注文処理ワークフローのオーケストレーター"""

    def __init__(
        self,
        config: FulfillmentConfig,
        store: FulfillmentStore | None,
        auth: AuthVerifier | None,
        publisher: EventPublisher | None = None,
        cart: CartReconciler | None = None,
    ):
        self.config = config
        self.store = store
        self.auth = auth
        self.publisher = publisher or EventPublisher(None)
        self.cart = cart or (CartReconciler.default(store) if store is not None else None)
        self.writer = RetryingOrderWriter(store, config) if store is not None else None

    async def execute(self, body: bytes, authorization: str | None) -> WorkflowResponse:
        """
        1リクエスト分のワークフローを実行する。

        全体をプラットフォームの強制終了より短い期限で包み、
        期限切れでも構造化されたエラーを返せるようにする。
        """
        request_id = new_request_id()
        log = RequestLogger(logger, request_id)
        started = time.monotonic()
        log.info("ORDER PROCESSING START")

        try:
            return await with_timeout(
                self._run(body, authorization, log, started),
                self.config.request_timeout_ms,
                "Request",
            )
        except Exception as e:
            elapsed = _elapsed_ms(started)
            log.exception("Unexpected function error after %dms", elapsed)
            return WorkflowResponse(
                500,
                error_body(
                    "Internal server error",
                    request_id,
                    message=str(e),
                    processing_time_ms=elapsed,
                ),
            )

    async def _run(
        self,
        body: bytes,
        authorization: str | None,
        log: RequestLogger,
        started: float,
    ) -> WorkflowResponse:
        request_id = log.request_id
        if not self.config.is_complete or self.store is None or self.auth is None:
            log.error("Missing data store or auth configuration")
            return WorkflowResponse(500, error_body("Server configuration error", request_id))

        # ── Validating ──────────────────────────────
        try:
            data = json.loads(body, parse_constant=_reject_constant)
        except ValueError as e:
            log.warning("Failed to parse request body: %s", e)
            return WorkflowResponse(400, error_body("Invalid JSON in request body", request_id))

        errors = validate_order_payload(data)
        if not errors:
            try:
                request = OrderRequest.model_validate(data)
            except ValidationError as e:
                errors = [
                    f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}"
                    for err in e.errors()
                ]
        if errors:
            log.warning("Order validation failed: %s", errors)
            return WorkflowResponse(
                400, error_body("Order validation failed", request_id, errors=errors)
            )

        # ── Authenticating ──────────────────────────
        try:
            user = await self.auth.verify(authorization, log)
        except AuthenticationError as e:
            return WorkflowResponse(401, error_body(str(e), request_id))

        # ── Creating Order (致命的) ─────────────────
        fulfillment_log = FulfillmentLog()
        step = fulfillment_log.start("CreateOrder")
        try:
            order = await with_timeout(
                self.writer.create(request, user, log),
                self.config.order_creation_timeout_ms,
                "Order creation",
            )
        except (OrderCreationError, OperationTimeout) as e:
            log.error("Order creation failed: %s", e)
            return WorkflowResponse(
                500, error_body("Order creation failed", request_id, details=str(e))
            )
        fulfillment_log.complete(step, order_id=order.id, order_number=order.order_number)
        log.info("Order %s committed, starting follow-up steps", order.order_number)

        # ── 以降はすべてベストエフォート ─────────────
        await self._record_coupon_and_inventory(request, order.id, user.id, fulfillment_log, log)

        step = fulfillment_log.start("ProvisionKits")
        kits = await provision_kit_registrations(self.store, order.id, log)
        fulfillment_log.complete(step, registration_count=kits.registration_count)

        step = fulfillment_log.start("ReconcileCart")
        try:
            cleared = await self.cart.reconcile(user.id, log)
        except CartClearError as e:
            fulfillment_log.fail(step, e)
            log.warning(
                "Cart clearing failed but order was successful: order=%s error=%s",
                order.id, e,
            )
        else:
            fulfillment_log.complete(step, method=cleared.method)

        await self.publisher.publish("FulfillmentCompleted", order.id, fulfillment_log, log)

        elapsed = _elapsed_ms(started)
        log.info("Order processing completed successfully in %dms", elapsed)
        return WorkflowResponse(
            200,
            success_body(order, request, request_id, elapsed),
            notification=NotificationJob(
                order=order, request=request, kit_codes=kits.kit_codes, log=log
            ),
        )

    async def _record_coupon_and_inventory(
        self,
        request: OrderRequest,
        order_id: str,
        user_id: str,
        fulfillment_log: FulfillmentLog,
        log: RequestLogger,
    ) -> None:
        """クーポン記録と在庫減算は互いに独立しているので並列に実行する。"""
        inventory_step = fulfillment_log.start("ReduceInventory")
        inventory_call = reduce_inventory(self.store, request.items, log)

        if request.coupon_id and request.discount_amount > 0:
            coupon_step = fulfillment_log.start("RecordCoupon")
            coupon_recorded, inventory = await asyncio.gather(
                record_coupon_usage(
                    self.store,
                    request.coupon_id,
                    user_id,
                    order_id,
                    request.discount_amount,
                    log,
                ),
                inventory_call,
            )
            if coupon_recorded:
                fulfillment_log.complete(coupon_step)
            else:
                fulfillment_log.fail(coupon_step, "coupon usage not recorded")
        else:
            inventory = await inventory_call

        if inventory.success:
            fulfillment_log.complete(inventory_step)
        else:
            fulfillment_log.fail(inventory_step, "; ".join(inventory.errors.values()))
            log.warning("Inventory reduction failed but order was successful: order=%s", order_id)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _reject_constant(name: str):
    # NaN / Infinity は JSON の規格外
    raise ValueError(f"Unsupported JSON constant: {name}")
