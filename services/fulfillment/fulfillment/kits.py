"""
Fulfillment Service — Kit Registration Provisioner

注文に含まれるテストキット1個ごとに登録枠を作成し、
生成されたキットコードを管理者通知のために回収する。
エラーや空の結果は「キットコード 0 件」として扱う。
"""

import logging
from dataclasses import dataclass, field

from .logs import RequestLogger
from .store import FulfillmentStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class KitProvisioningResult:
    registration_count: int = 0
    kit_codes: list[str] = field(default_factory=list)


async def provision_kit_registrations(
    store: FulfillmentStore,
    order_id: str,
    log: RequestLogger,
) -> KitProvisioningResult:
    log = log.bind(logger)
    log.info("Creating kit registrations for order %s", order_id)
    try:
        rows = await store.create_kit_registrations(order_id)
    except Exception as e:
        log.warning(
            "Kit registration creation failed but order was successful: order=%s error=%s",
            order_id, e,
        )
        return KitProvisioningResult()

    if not rows:
        log.warning("Kit registration returned no result for order %s", order_id)
        return KitProvisioningResult()

    row = rows[0]
    result = KitProvisioningResult(
        registration_count=int(row.get("registration_count") or 0),
        kit_codes=[str(code) for code in row.get("kit_codes") or []],
    )
    log.info(
        "Created %d kit registrations for order %s: %s",
        result.registration_count, order_id, result.kit_codes,
    )
    return result
