"""
Fulfillment Service — 設定

環境変数はプロセス起動時に一度だけ読み込み、FulfillmentConfig として
オーケストレーターと各コンポーネントに注入する。
リクエスト処理中に os.environ を参照することはない。
"""

import os
from collections.abc import Mapping

from pydantic import BaseModel, ConfigDict

DEFAULT_APP_URL = "https://mywaterqualityca.netlify.app"
DEFAULT_LOOPS_API_URL = "https://app.loops.so/api/v1/transactional"


class FulfillmentConfig(BaseModel):
    """注文処理ワークフローの設定"""

    model_config = ConfigDict(frozen=True)

    database_url: str | None = None
    supabase_url: str | None = None
    supabase_service_key: str | None = None

    loops_api_key: str | None = None
    loops_api_url: str = DEFAULT_LOOPS_API_URL
    redis_url: str | None = None

    app_url: str = DEFAULT_APP_URL
    admin_email: str = "orders@mywaterquality.ca"
    customer_template_id: str = "cmb6pqu9c02qht60i7w92yalf"
    admin_template_id: str = "cmbax4sey1n651h0it0rm6f8k"
    timezone: str = "America/Toronto"

    # ── タイムアウト (ミリ秒) ───────────────────────
    request_timeout_ms: int = 25_000
    auth_timeout_ms: int = 8_000
    order_creation_timeout_ms: int = 20_000
    order_insert_timeout_ms: int = 10_000
    items_insert_timeout_ms: int = 8_000
    event_publish_timeout_ms: int = 2_000

    # ── 注文作成リトライ ────────────────────────────
    order_max_attempts: int = 2
    retry_backoff_ms: int = 1_000
    retry_backoff_cap_ms: int = 2_000

    @property
    def is_complete(self) -> bool:
        """データストアと認証に必要な値がすべて揃っているか。"""
        return bool(self.database_url and self.supabase_url and self.supabase_service_key)


_ENV_FIELDS = {
    "DATABASE_URL": "database_url",
    "SUPABASE_URL": "supabase_url",
    "SUPABASE_SERVICE_KEY": "supabase_service_key",
    "LOOPS_API_KEY": "loops_api_key",
    "LOOPS_API_URL": "loops_api_url",
    "REDIS_URL": "redis_url",
    "APP_URL": "app_url",
    "ADMIN_ORDER_EMAIL": "admin_email",
    "CUSTOMER_CONFIRMATION_TEMPLATE_ID": "customer_template_id",
    "ADMIN_NOTIFICATION_TEMPLATE_ID": "admin_template_id",
    "ORDER_TIMEZONE": "timezone",
}


def load_config(environ: Mapping[str, str] | None = None) -> FulfillmentConfig:
    """環境変数から設定を組み立てる。空文字の値は未設定として扱う。"""
    environ = os.environ if environ is None else environ
    values = {
        field: environ[key]
        for key, field in _ENV_FIELDS.items()
        if environ.get(key)
    }
    return FulfillmentConfig(**values)
