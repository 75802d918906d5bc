"""
Fulfillment Service — Inventory Decrementer

明細ごとに「在庫を N 減らして新しい状態を返す」原子的な RPC を並列に呼び、
すべての完了を待つ。

支払いはこの時点で確定済みのため、在庫の減算に失敗しても注文は拒否しない。
一部だけ成功した状態も許容し、ログを元にサポートが手動で調整する。
"""

import asyncio
import logging
from dataclasses import dataclass, field

from .logs import RequestLogger
from .schemas import OrderItemRequest
from .store import FulfillmentStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class InventoryResult:
    # 明細のインデックスをキーにする (同じキットが複数行に現れることがある)
    reduced: dict[int, dict] = field(default_factory=dict)
    errors: dict[int, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.errors


async def reduce_inventory(
    store: FulfillmentStore,
    items: list[OrderItemRequest],
    log: RequestLogger,
) -> InventoryResult:
    """全明細の在庫を並列に減らす。例外は送出せず結果に集約する。"""
    log = log.bind(logger)
    log.info("Reducing inventory quantities for %d items", len(items))

    outcomes = await asyncio.gather(
        *(store.reduce_stock(item.test_kit_id, item.quantity) for item in items),
        return_exceptions=True,
    )

    result = InventoryResult()
    for index, (item, outcome) in enumerate(zip(items, outcomes)):
        if isinstance(outcome, BaseException):
            result.errors[index] = (
                f"Failed to reduce inventory for {item.test_kit_id}: {outcome}"
            )
            continue
        result.reduced[index] = outcome
        log.info(
            "Reduced inventory for %s: -%d (new quantity: %s)",
            outcome.get("name", item.test_kit_id),
            item.quantity,
            outcome.get("quantity"),
        )

    if result.success:
        log.info("Successfully reduced inventory for all %d items", len(items))
    else:
        log.warning(
            "Inventory reduction failed for %d of %d items: %s",
            len(result.errors),
            len(items),
            "; ".join(result.errors.values()),
        )
    return result
