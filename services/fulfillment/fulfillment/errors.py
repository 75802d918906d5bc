"""
Fulfillment Service — 例外定義

致命的(Fatal)なエラーはワークフローを中断して非 2xx レスポンスになる。
助言的(Advisory)なステップの失敗は各コンポーネントの境界で捕捉され、
ログに記録されるだけで呼び出し元には伝播しない。
"""


class FulfillmentError(Exception):
    """ワークフロー例外の基底クラス"""


class AuthenticationError(FulfillmentError):
    """呼び出し元を認証できなかった (401)"""


class OrderCreationError(FulfillmentError):
    """すべての試行で注文作成に失敗した (500)"""

    def __init__(self, message: str, attempts: int):
        super().__init__(message)
        self.attempts = attempts


class OperationTimeout(FulfillmentError):
    """Timeout Guard の期限切れ。操作自体の成否は不明。"""

    def __init__(self, timeout_ms: int, operation: str = "Operation"):
        super().__init__(f"{operation} timed out after {timeout_ms}ms")
        self.timeout_ms = timeout_ms
        self.operation = operation


class NotificationError(FulfillmentError):
    """メール API が 2xx 以外を返した"""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"Loops API Error {status_code}: {message}")
        self.status_code = status_code


class CartClearError(FulfillmentError):
    """カートのクリア方法がすべて失敗した"""

    def __init__(self, errors: dict[str, str]):
        details = ", ".join(f"{method}: {message}" for method, message in errors.items())
        super().__init__(f"All methods failed - {details}")
        self.errors = errors
