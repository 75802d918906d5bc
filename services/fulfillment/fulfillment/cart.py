"""
Fulfillment Service — Cart Reconciler

注文成功後にユーザーのカートを「空」または「存在しない」状態にする。
カートストアは過去に不整合な状態 (親のない明細、環境によっては RPC が無い)
を起こしているため、段階的に侵襲度が上がる方法を順に試す。

  1. rpc          — delete_user_cart_items(user_id) を1回呼ぶ
  2. direct-items — ユーザーの cart_id を引いて cart_items を直接削除
                    (カートが無ければ "no-cart" として成功)
  3. nuclear      — carts のレコード自体を削除 (明細も消える)

前の方法が失敗したときだけ次を試す。すべて失敗した場合のみ
CartClearError を送出し、メッセージには全方法のエラーを含める。
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

from .errors import CartClearError
from .logs import RequestLogger
from .store import FulfillmentStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CartClearResult:
    method: str
    items_deleted: int = 0
    carts_affected: int = 0


class CartClearStrategy(ABC):
    """カートを空にする方法の共通インターフェース"""

    name: str = ""

    def __init__(self, store: FulfillmentStore):
        self.store = store

    @abstractmethod
    async def clear(self, user_id: str) -> CartClearResult:
        ...


class RpcCartClear(CartClearStrategy):
    name = "rpc"

    async def clear(self, user_id: str) -> CartClearResult:
        deleted = await self.store.delete_user_cart_items(user_id)
        return CartClearResult(method=self.name, items_deleted=deleted)


class DirectItemsCartClear(CartClearStrategy):
    name = "direct-items"

    async def clear(self, user_id: str) -> CartClearResult:
        cart_ids = await self.store.find_cart_ids(user_id)
        if not cart_ids:
            return CartClearResult(method="no-cart")
        deleted = await self.store.delete_cart_items(cart_ids)
        return CartClearResult(
            method=self.name,
            items_deleted=max(deleted, 0),
            carts_affected=len(cart_ids),
        )


class NuclearCartClear(CartClearStrategy):
    name = "nuclear"

    async def clear(self, user_id: str) -> CartClearResult:
        deleted = await self.store.delete_carts(user_id)
        return CartClearResult(method=self.name, carts_affected=max(deleted, 0))


class CartReconciler:
    """戦略のリストを順に試し、最初に成功した方法の結果を返す"""

    def __init__(self, strategies: list[CartClearStrategy]):
        self.strategies = strategies

    @classmethod
    def default(cls, store: FulfillmentStore) -> "CartReconciler":
        return cls([RpcCartClear(store), DirectItemsCartClear(store), NuclearCartClear(store)])

    async def reconcile(self, user_id: str, log: RequestLogger) -> CartClearResult:
        log = log.bind(logger)
        log.info("Starting cart clearing for user %s", user_id)
        errors: dict[str, str] = {}

        for strategy in self.strategies:
            try:
                result = await strategy.clear(user_id)
            except Exception as e:
                errors[strategy.name] = str(e)
                log.warning("Cart clearing via %s failed: %s", strategy.name, e)
                continue

            log.info(
                "Cart cleared via %s: items_deleted=%d carts_affected=%d",
                result.method, result.items_deleted, result.carts_affected,
            )
            return result

        error = CartClearError(errors)
        log.error("%s", error)
        raise error
