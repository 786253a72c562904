"""
Transaction Service — FastAPI エントリーポイント

購入トランザクションの作成(POST)と確定(PUT)、照会(GET)を提供する。
外部の決済ゲートウェイは PaymentGatewayClient で、状態変化は
Redis Pub/Sub (transaction_events) で他サービスへ通知する。

起動:
    uvicorn checkout.main:create_app --factory
"""

import asyncio
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

from . import db
from .config import Settings
from .errors import CheckoutError, StateConflict
from .gateway import PaymentGatewayClient
from .logging_config import setup_logging
from .models import CardDetails, CardToken, CreateTransactionRequest, Transaction, TransactionStatus
from .orchestrator import TransactionOrchestrator
from .poller import run_poller

router = APIRouter()


def _orchestrator(request: Request) -> TransactionOrchestrator:
    return request.app.state.orchestrator


# ── Command Endpoints ────────────────────────────


@router.post("/transactions", status_code=201, response_model=Transaction)
async def create_transaction(req: CreateTransactionRequest, request: Request):
    """注文を検証・保存し、ゲートウェイに課金を作成する"""
    return await _orchestrator(request).create_transaction(req)


@router.put("/transactions/{transaction_id}", response_model=Transaction)
async def confirm_transaction(transaction_id: str, request: Request):
    """
    ゲートウェイの判定を反映する。

    すでに FINISHED なら何もせずにそのまま返す(冪等な呼び出し元向け)。
    """
    orchestrator = _orchestrator(request)
    try:
        return await orchestrator.confirm_transaction(transaction_id)
    except StateConflict as e:
        if e.current_status == TransactionStatus.FINISHED.value:
            return await orchestrator.get_transaction(transaction_id)
        raise


@router.post("/transactions/tokenize", status_code=201, response_model=CardToken)
async def tokenize_card(card: CardDetails, request: Request):
    """カードを検証してトークン化する(生のカード情報は保存しない)"""
    return await _orchestrator(request).tokenize_card(card)


# ── Query Endpoints ──────────────────────────────


@router.get("/transactions", response_model=list[Transaction])
async def list_transactions(request: Request):
    return await _orchestrator(request).list_transactions()


@router.get("/transactions/acceptance")
async def acceptance_token(request: Request):
    """規約同意トークンを取得する"""
    return {"acceptance_token": await _orchestrator(request).acceptance_token()}


@router.get("/transactions/{transaction_id}", response_model=Transaction)
async def get_transaction(transaction_id: str, request: Request):
    return await _orchestrator(request).get_transaction(transaction_id)


@router.get("/health")
async def health():
    return {"status": "ok", "service": "transaction-service"}


async def checkout_error_handler(request: Request, exc: CheckoutError) -> JSONResponse:
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


def create_app(
    settings: Settings | None = None,
    *,
    gateway: PaymentGatewayClient | None = None,
    redis: aioredis.Redis | None = None,
) -> FastAPI:
    """
    アプリケーションを組み立てる。

    settings 省略時は環境変数から一度だけ読み込む。gateway / redis は
    テストで差し替えられるよう注入できる。
    """
    settings = settings or Settings.from_env()
    setup_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = db.create_engine(settings.database_url)
        if settings.create_schema:
            await db.init_schema(engine)
        session_factory = db.create_session_factory(engine)

        redis_pool = redis or aioredis.from_url(settings.redis_url, decode_responses=True)
        gateway_client = gateway or PaymentGatewayClient(settings.gateway)

        orchestrator = TransactionOrchestrator(
            session_factory,
            gateway_client,
            redis_pool,
            stock_compensation=settings.stock_compensation,
        )
        app.state.orchestrator = orchestrator
        app.state.session_factory = session_factory

        shutdown_event = asyncio.Event()
        poller_task = None
        if settings.poll_interval_seconds > 0:
            poller_task = asyncio.create_task(
                run_poller(orchestrator, session_factory, settings.poll_interval_seconds, shutdown_event)
            )

        yield

        shutdown_event.set()
        if poller_task:
            await poller_task
        if gateway is None:
            await gateway_client.aclose()
        if redis is None:
            await redis_pool.aclose()
        await engine.dispose()

    app = FastAPI(title="Transaction Service", lifespan=lifespan)
    app.add_exception_handler(CheckoutError, checkout_error_handler)
    app.include_router(router)
    return app
