"""
Fulfillment Service — リクエスト単位のロガー

各ログ行にリクエスト ID を付与し、レスポンスの request_id と
ログを突き合わせられるようにする。
"""

import logging


class RequestLogger(logging.LoggerAdapter):
    """メッセージ先頭に [request_id] を付け、extra にも request_id を載せる。"""

    def __init__(self, logger: logging.Logger, request_id: str):
        super().__init__(logger, {"request_id": request_id})
        self.request_id = request_id

    def process(self, msg, kwargs):
        extra = dict(kwargs.get("extra") or {})
        extra.setdefault("request_id", self.request_id)
        kwargs["extra"] = extra
        return f"[{self.request_id}] {msg}", kwargs

    def bind(self, logger: logging.Logger) -> "RequestLogger":
        """同じリクエスト ID で別モジュールのロガーに付け替える。"""
        return RequestLogger(logger, self.request_id)
