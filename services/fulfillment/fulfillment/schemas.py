"""
Fulfillment Service — リクエスト / ドメインモデル

チェックアウト画面から届く注文リクエストと、データストアに書き込まれた
注文ヘッダーの形を定義する。

検証は2段階:
  1. validate_order_payload() が副作用の前にビジネスルールを確認し、
     クライアントに返すエラーメッセージの一覧を作る
  2. ルールを通過した dict を OrderRequest にパースする
"""

import math
from datetime import datetime
from numbers import Real
from typing import Any

from pydantic import BaseModel, ConfigDict


class Address(BaseModel):
    """配送先 / 請求先住所。チェックアウト画面の camelCase をそのまま受け取る。"""

    model_config = ConfigDict(extra="allow")

    firstName: str | None = None
    lastName: str | None = None
    address: str | None = None
    city: str | None = None
    province: str | None = None
    postalCode: str | None = None
    country: str | None = None
    email: str | None = None
    phone: str | None = None


class OrderItemRequest(BaseModel):
    """カート内の1行 (キットの種類ごと)"""

    test_kit_id: str
    quantity: int
    unit_price: float
    product_name: str
    product_description: str | None = None

    @property
    def total_price(self) -> float:
        # クライアントの合計値は信用せず、ここで計算する
        return round(self.quantity * self.unit_price, 2)


class OrderRequest(BaseModel):
    """注文リクエスト (そのままの形では保存しない)"""

    model_config = ConfigDict(extra="ignore")

    shipping_address: Address
    billing_address: Address
    items: list[OrderItemRequest]
    subtotal: float = 0
    discount_amount: float = 0
    tax_amount: float = 0
    shipping_cost: float = 0
    total_amount: float
    coupon_code: str | None = None
    coupon_id: str | None = None
    payment_reference: str | None = None
    payment_method: str | None = None
    special_instructions: str | None = None
    is_free_order: bool = False

    @property
    def is_free(self) -> bool:
        # is_free_order フラグは参照しない。無料かどうかは合計金額だけで決まる
        return self.total_amount == 0

    @property
    def customer_email(self) -> str | None:
        return self.shipping_address.email or None


class StoredOrder(BaseModel):
    """データストアが返した注文ヘッダー (order_number はストア側で採番)"""

    id: str
    order_number: str | None = None
    user_id: str
    status: str
    payment_status: str
    fulfillment_status: str = "unfulfilled"
    total_amount: float
    discount_amount: float = 0
    coupon_code: str | None = None
    coupon_id: str | None = None
    payment_method: str | None = None
    special_instructions: str | None = None
    shipping_cost: float = 0
    tax_amount: float = 0
    created_at: datetime | None = None

    @property
    def is_free_order(self) -> bool:
        return self.total_amount == 0


class AuthenticatedUser(BaseModel):
    id: str
    email: str | None = None


# ── 検証ルール ───────────────────────────────────


def _is_number(value: Any) -> bool:
    return isinstance(value, Real) and not isinstance(value, bool) and math.isfinite(value)


def _is_free(data: dict) -> bool:
    return _is_number(data.get("total_amount")) and data["total_amount"] == 0


def _validate_item(index: int, item: Any) -> list[str]:
    prefix = f"items[{index}]"
    if not isinstance(item, dict):
        return [f"{prefix} must be an object"]

    errors = []
    if not item.get("test_kit_id"):
        errors.append(f"{prefix}.test_kit_id is required")
    quantity = item.get("quantity")
    if not (isinstance(quantity, int) and not isinstance(quantity, bool) and quantity > 0):
        errors.append(f"{prefix}.quantity must be a positive integer")
    unit_price = item.get("unit_price")
    if not (_is_number(unit_price) and unit_price >= 0):
        errors.append(f"{prefix}.unit_price must be a non-negative number")
    if not item.get("product_name"):
        errors.append(f"{prefix}.product_name is required")
    return errors


def validate_order_payload(data: Any) -> list[str]:
    """
    副作用を起こす前に注文リクエストを検証する。

    空リストなら有効。無料注文 (total_amount == 0)
    以外では payment_reference が必須。
    """
    if not isinstance(data, dict):
        return ["Request body must be a JSON object"]

    errors = []
    if not isinstance(data.get("shipping_address"), dict):
        errors.append("shipping_address is required")
    if not isinstance(data.get("billing_address"), dict):
        errors.append("billing_address is required")

    items = data.get("items")
    if not isinstance(items, list):
        errors.append("items array is required")
    elif not items:
        errors.append("Order must contain at least one item")
    else:
        for index, item in enumerate(items):
            errors.extend(_validate_item(index, item))

    total_amount = data.get("total_amount")
    if not _is_number(total_amount) or total_amount < 0:
        errors.append("valid total_amount is required")

    if not _is_free(data) and not data.get("payment_reference"):
        errors.append("payment_reference is required for paid orders")

    return errors
