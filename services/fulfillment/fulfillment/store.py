"""
Fulfillment Service — データストア

注文・カート・クーポンのテーブルと、在庫サブシステム等が所有する
ストアドファンクション(RPC)へのアクセスをまとめる。

このワークフローには複数ステートメントにまたがるトランザクションが
無い前提なので、各メソッドは短いセッションを1つ開いて完結する。
在庫減算とカート削除の原子性はストア側の1関数 / 1ステートメントに依存する。
"""

from datetime import datetime, timezone

from sqlalchemy import JSON, bindparam, text
from sqlalchemy.orm import sessionmaker

_INSERT_ORDER = text("""
    INSERT INTO orders
        (id, user_id, status, payment_status, fulfillment_status,
         subtotal, shipping_cost, tax_amount, total_amount, discount_amount,
         coupon_code, coupon_id, shipping_address, billing_address,
         special_instructions, payment_method, payment_data)
    VALUES
        (:id, :user_id, :status, :payment_status, :fulfillment_status,
         :subtotal, :shipping_cost, :tax_amount, :total_amount, :discount_amount,
         :coupon_code, :coupon_id, :shipping_address, :billing_address,
         :special_instructions, :payment_method, :payment_data)
    RETURNING
        id, order_number, user_id, status, payment_status, fulfillment_status,
        total_amount, discount_amount, coupon_code, coupon_id, payment_method,
        special_instructions, shipping_cost, tax_amount, created_at
""").bindparams(
    bindparam("shipping_address", type_=JSON),
    bindparam("billing_address", type_=JSON),
    bindparam("payment_data", type_=JSON),
)

_INSERT_ORDER_ITEM = text("""
    INSERT INTO order_items
        (order_id, test_kit_id, quantity, unit_price, total_price,
         product_name, product_description)
    VALUES
        (:order_id, :test_kit_id, :quantity, :unit_price, :total_price,
         :product_name, :product_description)
""")


def _number(value) -> float:
    return float(value) if value is not None else 0.0


class FulfillmentStore:
    """注文処理ワークフローが使うデータストア操作"""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    # ── 注文ヘッダー / 明細 ──────────────────────────

    async def insert_order(self, row: dict) -> dict:
        """注文ヘッダーを1行追加し、ストアが採番した値を含む行を返す。"""
        async with self._session_factory() as session:
            result = await session.execute(_INSERT_ORDER, row)
            created = result.mappings().one()
            await session.commit()
        created = dict(created)
        for key in ("total_amount", "discount_amount", "shipping_cost", "tax_amount"):
            created[key] = _number(created.get(key))
        created["id"] = str(created["id"])
        created["user_id"] = str(created["user_id"])
        if created.get("order_number") is not None:
            created["order_number"] = str(created["order_number"])
        return created

    async def insert_order_items(self, rows: list[dict]) -> None:
        """明細をまとめて1回で追加する。"""
        async with self._session_factory() as session:
            await session.execute(_INSERT_ORDER_ITEM, rows)
            await session.commit()

    async def delete_order(self, order_id: str) -> None:
        """補償: 明細の作成に失敗した注文ヘッダーを削除する。"""
        async with self._session_factory() as session:
            await session.execute(
                text("DELETE FROM orders WHERE id = :id"),
                {"id": order_id},
            )
            await session.commit()

    # ── クーポン ─────────────────────────────────────

    async def insert_coupon_usage(
        self, coupon_id: str, user_id: str, order_id: str, discount_amount: float
    ) -> None:
        async with self._session_factory() as session:
            await session.execute(
                text("""
                    INSERT INTO coupon_usage (coupon_id, user_id, order_id, discount_amount)
                    VALUES (:coupon_id, :user_id, :order_id, :discount_amount)
                """),
                {
                    "coupon_id": coupon_id,
                    "user_id": user_id,
                    "order_id": order_id,
                    "discount_amount": discount_amount,
                },
            )
            await session.commit()

    async def increment_coupon_usage(self, coupon_id: str) -> None:
        async with self._session_factory() as session:
            await session.execute(
                text("""
                    UPDATE coupons
                    SET usage_count = usage_count + 1, updated_at = :now
                    WHERE coupon_id = :coupon_id
                """),
                {"coupon_id": coupon_id, "now": datetime.now(timezone.utc)},
            )
            await session.commit()

    # ── RPC (ストアドファンクション) ─────────────────

    async def reduce_stock(self, kit_id: str, quantity: int) -> dict:
        """在庫を原子的に減らし、減算後の (name, quantity) を返す。"""
        async with self._session_factory() as session:
            result = await session.execute(
                text("SELECT * FROM reduce_test_kit_inventory(:kit_id, :reduce_quantity)"),
                {"kit_id": kit_id, "reduce_quantity": quantity},
            )
            row = result.mappings().one()
            await session.commit()
        return dict(row)

    async def delete_user_cart_items(self, user_id: str) -> int:
        """ユーザーの全カート明細を1関数で削除し、削除件数を返す。"""
        async with self._session_factory() as session:
            result = await session.execute(
                text("SELECT delete_user_cart_items(:target_user_id)"),
                {"target_user_id": user_id},
            )
            deleted = result.scalar()
            await session.commit()
        return int(deleted or 0)

    async def create_kit_registrations(self, order_id: str) -> list[dict]:
        """購入数ぶんのキット登録枠を作り、(registration_count, kit_codes) の行を返す。"""
        async with self._session_factory() as session:
            result = await session.execute(
                text("SELECT * FROM create_kit_registrations_for_order(:order_id_param)"),
                {"order_id_param": order_id},
            )
            rows = [dict(row) for row in result.mappings().all()]
            await session.commit()
        return rows

    # ── カート ───────────────────────────────────────

    async def find_cart_ids(self, user_id: str) -> list[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                text("SELECT cart_id FROM carts WHERE user_id = :user_id"),
                {"user_id": user_id},
            )
            return [str(row.cart_id) for row in result.fetchall()]

    async def delete_cart_items(self, cart_ids: list[str]) -> int:
        """指定カートの明細を削除する。"""
        statement = text("DELETE FROM cart_items WHERE cart_id IN :cart_ids").bindparams(
            bindparam("cart_ids", expanding=True)
        )
        async with self._session_factory() as session:
            result = await session.execute(statement, {"cart_ids": cart_ids})
            await session.commit()
        return result.rowcount

    async def delete_carts(self, user_id: str) -> int:
        """カートのレコードそのものを削除する (明細も連鎖して消える)。"""
        async with self._session_factory() as session:
            result = await session.execute(
                text("DELETE FROM carts WHERE user_id = :user_id"),
                {"user_id": user_id},
            )
            await session.commit()
        return result.rowcount

