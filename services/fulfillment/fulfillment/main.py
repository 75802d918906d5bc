"""
Fulfillment Service — FastAPI エントリーポイント

決済完了後のチェックアウトリクエストを受け取り、注文処理ワークフローを実行する。

    uvicorn fulfillment.main:app --host 0.0.0.0 --port 8000

  ┌──────────┐  POST /process-order  ┌──────────────┐
  │ Checkout │ ───────────────────▶ │ Orchestrator │──▶ PostgreSQL (orders, carts, RPC)
  │    UI    │ ◀─────────────────── │              │──▶ Supabase Auth
  └──────────┘   200 / 4xx / 500     └──────┬───────┘──▶ Redis (fulfillment_events)
                                             │ BackgroundTasks
                                             ▼
                                       Loops (メール)

設定とクライアント類は lifespan で一度だけ作成し、app.state に保持する。
"""

import logging
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
from fastapi import BackgroundTasks, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .auth import AuthVerifier
from .config import FulfillmentConfig, load_config
from .events import EventPublisher
from .notifications import NotificationDispatcher
from .orchestrator import OrderFulfillmentOrchestrator
from .responses import error_body, new_request_id
from .store import FulfillmentStore

logger = logging.getLogger(__name__)

ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def create_app(
    config: FulfillmentConfig | None = None,
    *,
    orchestrator: OrderFulfillmentOrchestrator | None = None,
    dispatcher: NotificationDispatcher | None = None,
) -> FastAPI:
    """
    アプリケーションを組み立てる。

    orchestrator / dispatcher を渡した場合はそれを使い、lifespan では何も作らない
    (テスト用)。渡さない場合は lifespan で設定からすべてを構築する。
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "orchestrator", None) is not None:
            yield
            return

        cfg = config or load_config()
        http_client = httpx.AsyncClient(timeout=30.0)
        engine = create_async_engine(cfg.database_url, echo=False) if cfg.database_url else None
        redis_conn = aioredis.from_url(cfg.redis_url, decode_responses=True) if cfg.redis_url else None

        store = None
        if engine is not None:
            store = FulfillmentStore(
                sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            )
        auth = None
        if cfg.supabase_url and cfg.supabase_service_key:
            auth = AuthVerifier(
                http_client, cfg.supabase_url, cfg.supabase_service_key, cfg.auth_timeout_ms
            )
        if not cfg.is_complete:
            logger.error("Missing DATABASE_URL / SUPABASE_URL / SUPABASE_SERVICE_KEY")

        app.state.orchestrator = OrderFulfillmentOrchestrator(
            cfg,
            store,
            auth,
            publisher=EventPublisher(redis_conn, cfg.event_publish_timeout_ms),
        )
        app.state.dispatcher = NotificationDispatcher(http_client, cfg)
        try:
            yield
        finally:
            await http_client.aclose()
            if redis_conn is not None:
                await redis_conn.aclose()
            if engine is not None:
                await engine.dispose()

    app = FastAPI(title="Order Fulfillment Service", lifespan=lifespan)
    app.state.orchestrator = orchestrator
    app.state.dispatcher = dispatcher

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    # ── 注文処理エンドポイント ───────────────────────

    @app.api_route("/process-order", methods=ALL_METHODS)
    async def process_order(request: Request, background_tasks: BackgroundTasks):
        """
        注文処理ワークフロー

        OPTIONS はプリフライト用に空の 200、POST 以外は 405。
        本文は生のまま渡し、JSON の解析と検証はワークフロー側で行う。
        """
        if request.method == "OPTIONS":
            return Response(status_code=200)
        if request.method != "POST":
            return JSONResponse(
                error_body("Method Not Allowed", new_request_id()), status_code=405
            )

        result = await request.app.state.orchestrator.execute(
            await request.body(),
            request.headers.get("authorization"),
        )
        if result.notification is not None and request.app.state.dispatcher is not None:
            background_tasks.add_task(request.app.state.dispatcher.dispatch, result.notification)
        return JSONResponse(result.body, status_code=result.status_code)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "fulfillment-service"}

    return app


app = create_app()
