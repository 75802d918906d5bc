"""
Fulfillment Service — Timeout Guard

待機中の操作に期限を設け、「返ってこない」を型付きの失敗に変える。

注意: 期限切れになっても元の操作はキャンセルしない(shield で保護)。
バックグラウンドで完了する可能性があるため、呼び出し側は
タイムアウトを「操作が起きなかった」ではなく「結果不明」として扱うこと。
"""

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from .errors import OperationTimeout

T = TypeVar("T")


async def with_timeout(
    operation: Awaitable[T],
    timeout_ms: int,
    name: str = "Operation",
) -> T:
    """operation が timeout_ms 以内に完了すればその結果を返す。"""
    task = asyncio.ensure_future(operation)
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout_ms / 1000)
    except asyncio.TimeoutError:
        # 取り残されたタスクの例外が "never retrieved" にならないよう回収する
        task.add_done_callback(_consume_result)
        raise OperationTimeout(timeout_ms, name) from None


def _consume_result(task: asyncio.Future) -> None:
    if not task.cancelled():
        task.exception()
