"""
Fulfillment Service — Retrying Order Writer

注文ヘッダーと明細を「2ステートメントの1単位」として作成する。
データストアはステートメントをまたぐトランザクションを提供しないため、
明細の挿入に失敗したら直前に作ったヘッダーを削除する補償処理で
「ヘッダーだけが残る」状態を防ぐ。

  ┌────────────── 1 回の試行 ──────────────┐
  │ 1. 派生フィールドを計算 (支払い状態など) │
  │ 2. ヘッダー INSERT (期限付き)           │
  │    └─ 失敗 → 試行失敗 (補償不要)         │
  │ 3. 明細 INSERT (期限付き)               │
  │    └─ 失敗 → ヘッダー DELETE (補償)      │
  │              → 試行失敗                  │
  └─────────────────────────────────────────┘
  試行失敗かつ残り回数あり → min(base·attempt, cap) ms 待って再試行

注意: ヘッダーと明細がコミットされた後に呼び出し側が失敗と判断した場合、
再試行で注文が重複する可能性がある (冪等キーは無い)。
"""

import asyncio
import logging
from datetime import datetime, timezone
from uuid import uuid4

from .config import FulfillmentConfig
from .errors import OrderCreationError
from .logs import RequestLogger
from .schemas import AuthenticatedUser, OrderRequest, StoredOrder
from .store import FulfillmentStore
from .timeouts import with_timeout

logger = logging.getLogger(__name__)


def backoff_ms(attempt: int, config: FulfillmentConfig) -> int:
    """試行番号に比例する線形バックオフ (上限あり)。"""
    return min(config.retry_backoff_ms * attempt, config.retry_backoff_cap_ms)


def build_order_row(request: OrderRequest, user: AuthenticatedUser) -> dict:
    """注文ヘッダーの行を組み立てる。無料注文と有料注文で支払い情報の形が異なる。"""
    completed_at = datetime.now(timezone.utc).isoformat()
    if request.is_free:
        payment_method = "free"
        payment_data = {"type": "free_order", "completed_at": completed_at}
    else:
        payment_method = request.payment_method or "paypal"
        payment_data = (
            {"reference": request.payment_reference, "completed_at": completed_at}
            if request.payment_reference
            else None
        )

    return {
        "id": str(uuid4()),
        "user_id": user.id,
        "status": "confirmed",
        "payment_status": "not_required" if request.is_free else "paid",
        "fulfillment_status": "unfulfilled",
        "subtotal": request.subtotal,
        "shipping_cost": request.shipping_cost,
        "tax_amount": request.tax_amount,
        "total_amount": request.total_amount,
        "discount_amount": request.discount_amount,
        "coupon_code": request.coupon_code,
        "coupon_id": request.coupon_id,
        "shipping_address": request.shipping_address.model_dump(exclude_none=True),
        "billing_address": request.billing_address.model_dump(exclude_none=True),
        "special_instructions": request.special_instructions,
        "payment_method": payment_method,
        "payment_data": payment_data,
    }


def build_item_rows(request: OrderRequest, order_id: str) -> list[dict]:
    return [
        {
            "order_id": order_id,
            "test_kit_id": item.test_kit_id,
            "quantity": item.quantity,
            "unit_price": item.unit_price,
            "total_price": item.total_price,
            "product_name": item.product_name,
            "product_description": item.product_description,
        }
        for item in request.items
    ]


class RetryingOrderWriter:
    """注文ヘッダー + 明細の作成を最大 N 回試行する"""

    def __init__(self, store: FulfillmentStore, config: FulfillmentConfig):
        self.store = store
        self.config = config

    async def create(
        self,
        request: OrderRequest,
        user: AuthenticatedUser,
        log: RequestLogger,
    ) -> StoredOrder:
        """
        注文を作成して返す。

        すべての試行が失敗した場合は OrderCreationError を送出する。
        その時点でヘッダーだけが残っていることはない。
        """
        log = log.bind(logger)
        max_attempts = self.config.order_max_attempts
        last_error: Exception | None = None

        for attempt in range(1, max_attempts + 1):
            log.info("Order creation attempt %d/%d", attempt, max_attempts)
            try:
                order = await self._attempt(request, user, log)
            except Exception as e:
                last_error = e
                log.warning("Order creation attempt %d failed: %s", attempt, e)
                if attempt < max_attempts:
                    delay = backoff_ms(attempt, self.config)
                    log.info("Retrying in %dms...", delay)
                    await asyncio.sleep(delay / 1000)
                continue

            log.info(
                "Order created successfully on attempt %d: id=%s number=%s free=%s discount=%s",
                attempt,
                order.id,
                order.order_number,
                order.is_free_order,
                order.discount_amount,
            )
            return order

        raise OrderCreationError(str(last_error), attempts=max_attempts)

    async def _attempt(
        self,
        request: OrderRequest,
        user: AuthenticatedUser,
        log: RequestLogger,
    ) -> StoredOrder:
        # ── Phase 1: ヘッダー ───────────────────────
        row = build_order_row(request, user)
        created = await with_timeout(
            self.store.insert_order(row),
            self.config.order_insert_timeout_ms,
            "Order insert",
        )
        if not created:
            raise RuntimeError("Order creation returned no data")
        order = StoredOrder.model_validate(created)

        # ── Phase 2: 明細 (失敗時はヘッダーを補償削除) ──
        if request.items:
            try:
                await with_timeout(
                    self.store.insert_order_items(build_item_rows(request, order.id)),
                    self.config.items_insert_timeout_ms,
                    "Order items insert",
                )
            except Exception as e:
                await self._compensate(order.id, log)
                raise RuntimeError(f"Order items creation failed: {e}") from e

        return order

    async def _compensate(self, order_id: str, log: RequestLogger) -> None:
        """明細のないヘッダーを残さないよう削除する。"""
        log.warning("Deleting order %s after order items failure", order_id)
        try:
            await self.store.delete_order(order_id)
        except Exception:
            log.exception("Compensating delete failed for order %s", order_id)
