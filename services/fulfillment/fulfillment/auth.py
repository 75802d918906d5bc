"""
Fulfillment Service — 認証

Authorization: Bearer <token> を Supabase Auth (GoTrue) に問い合わせて
ユーザー ID / メールアドレスに解決する。
"""

import logging

import httpx

from .errors import AuthenticationError, OperationTimeout
from .logs import RequestLogger
from .schemas import AuthenticatedUser
from .timeouts import with_timeout

logger = logging.getLogger(__name__)


def bearer_token(authorization: str | None) -> str:
    """ヘッダーからトークンを取り出す。Bearer 形式でなければ AuthenticationError。"""
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthenticationError("Authorization required")
    token = authorization[len("Bearer "):].strip()
    if not token:
        raise AuthenticationError("Authorization required")
    return token


class AuthVerifier:
    """トークンを検証してユーザーを返す"""

    def __init__(
        self,
        client: httpx.AsyncClient,
        supabase_url: str,
        service_key: str,
        timeout_ms: int = 8_000,
    ):
        self.client = client
        self.user_url = f"{supabase_url.rstrip('/')}/auth/v1/user"
        self.service_key = service_key
        self.timeout_ms = timeout_ms

    async def verify(self, authorization: str | None, log: RequestLogger) -> AuthenticatedUser:
        log = log.bind(logger)
        token = bearer_token(authorization)
        try:
            resp = await with_timeout(
                self.client.get(
                    self.user_url,
                    headers={
                        "apikey": self.service_key,
                        "Authorization": f"Bearer {token}",
                    },
                ),
                self.timeout_ms,
                "Auth verification",
            )
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, OperationTimeout, ValueError) as e:
            log.warning("User authentication failed: %s", e)
            raise AuthenticationError("Authentication failed") from e

        if not isinstance(data, dict) or not data.get("id"):
            log.warning("User authentication failed: no user in response")
            raise AuthenticationError("Authentication failed")

        user = AuthenticatedUser(id=str(data["id"]), email=data.get("email"))
        log.info("User authenticated successfully: id=%s email=%s", user.id, user.email)
        return user
