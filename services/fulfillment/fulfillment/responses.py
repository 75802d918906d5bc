"""
Fulfillment Service — レスポンス組み立て

成功レスポンスは注文の要約と GTM (Google Tag Manager) 購入計測用データを返す。
助言的ステップの部分的な失敗はレスポンスに含めない (ログでのみ確認する)。
"""

import random
import string

from .schemas import OrderRequest, StoredOrder

_REQUEST_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_request_id() -> str:
    """ログと突き合わせるための6文字の base-36 ID"""
    return "".join(random.choices(_REQUEST_ID_ALPHABET, k=6))


def error_body(error: str, request_id: str, **details) -> dict:
    return {"error": error, **details, "request_id": request_id}


def gtm_purchase_data(order: StoredOrder, request: OrderRequest) -> dict:
    data = {
        "transaction_id": order.order_number,
        "value": order.total_amount,
        "currency": "CAD",
        "items": [
            {
                "item_id": item.test_kit_id,
                "item_name": item.product_name,
                "item_category": "water_test_kit",
                "quantity": item.quantity,
                "price": item.unit_price,
            }
            for item in request.items
        ],
        "shipping": order.shipping_cost,
        "tax": order.tax_amount,
        "is_free_order": order.is_free_order,
    }
    if order.coupon_code:
        data["coupon"] = order.coupon_code
    return data


def success_body(
    order: StoredOrder,
    request: OrderRequest,
    request_id: str,
    processing_time_ms: int,
) -> dict:
    return {
        "success": True,
        "order": {
            "id": order.id,
            "order_number": order.order_number,
            "status": order.status,
            "payment_status": order.payment_status,
            "total_amount": order.total_amount,
            "discount_amount": order.discount_amount,
            "coupon_code": order.coupon_code,
            "is_free_order": order.is_free_order,
            "created_at": order.created_at.isoformat() if order.created_at else None,
        },
        "gtm_purchase_data": gtm_purchase_data(order, request),
        "message": (
            "Free order created successfully!"
            if order.is_free_order
            else "Order created successfully"
        ),
        "processing_time_ms": processing_time_ms,
        "request_id": request_id,
    }
