"""
Fulfillment Service — イベント発行

ワークフローの各ステップの記録 (fulfillment_log) を Redis Pub/Sub の
fulfillment_events チャネルに発行する。購読側は運用監視用。

Redis Pub/Sub は fire-and-forget 方式なので、購読者がいなければ失われる。
発行の失敗はログに残すだけで、注文の結果には影響しない。
"""

import json
import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis

from .logs import RequestLogger
from .timeouts import with_timeout

logger = logging.getLogger(__name__)

CHANNEL = "fulfillment_events"


class FulfillmentLog:
    """ステップごとの実行記録"""

    def __init__(self) -> None:
        self.entries: list[dict] = []

    def start(self, action: str) -> dict:
        entry = {
            "step": len(self.entries) + 1,
            "action": action,
            "status": "EXECUTING",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        self.entries.append(entry)
        return entry

    def complete(self, entry: dict, **details) -> None:
        entry["status"] = "COMPLETED"
        entry.update(details)

    def fail(self, entry: dict, error: object) -> None:
        entry["status"] = "FAILED"
        entry["error"] = str(error)


class EventPublisher:
    def __init__(self, redis: aioredis.Redis | None, timeout_ms: int = 2_000):
        self.redis = redis
        self.timeout_ms = timeout_ms

    async def publish(
        self,
        event_type: str,
        order_id: str,
        fulfillment_log: FulfillmentLog,
        log: RequestLogger,
    ) -> bool:
        log = log.bind(logger)
        if self.redis is None:
            return False
        message = json.dumps(
            {
                "event_type": event_type,
                "order_id": order_id,
                "request_id": log.request_id,
                "fulfillment_log": fulfillment_log.entries,
            },
            default=str,
        )
        try:
            await with_timeout(
                self.redis.publish(CHANNEL, message),
                self.timeout_ms,
                "Event publish",
            )
        except Exception as e:
            log.warning("Failed to publish %s for order %s: %s", event_type, order_id, e)
            return False
        return True
