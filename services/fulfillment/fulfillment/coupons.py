"""
Fulfillment Service — Coupon Ledger Updater

クーポンの利用記録を追加し、クーポンの利用回数を1増やす。
失敗しても注文は有効なまま (割引の集計が少なくなるだけ) なので、
例外はここで捕捉してログに残し、呼び出し元には伝えない。
"""

import logging

from .logs import RequestLogger
from .store import FulfillmentStore

logger = logging.getLogger(__name__)


async def record_coupon_usage(
    store: FulfillmentStore,
    coupon_id: str,
    user_id: str,
    order_id: str,
    discount_amount: float,
    log: RequestLogger,
) -> bool:
    """利用記録 + 利用回数の加算。成功したかどうかだけを返す。"""
    log = log.bind(logger)
    log.info(
        "Recording coupon usage: coupon=%s user=%s order=%s discount=%s",
        coupon_id, user_id, order_id, discount_amount,
    )
    try:
        await store.insert_coupon_usage(coupon_id, user_id, order_id, discount_amount)
        await store.increment_coupon_usage(coupon_id)
    except Exception as e:
        log.warning(
            "Coupon usage recording failed but order was successful: "
            "coupon=%s user=%s order=%s error=%s",
            coupon_id, user_id, order_id, e,
        )
        return False

    log.info("Coupon usage recorded successfully")
    return True
