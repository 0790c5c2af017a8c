import logging
from contextlib import asynccontextmanager
from typing import Optional
import httpx
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import async_sessionmaker
from paysync.api.v1 import routes_checkout, routes_health, routes_subscription, routes_webhook
from paysync.core.config import Settings, settings
from paysync.core.exceptions import ConfigError, GatewayError
from paysync.db import session
from paysync.redis import close_redis, redis_client
from paysync.services.checkout import CheckoutService
from paysync.services.dodo_client import DodoPaymentsClient
from paysync.services.subscription import SubscriptionSync
from paysync.services.verifier import WebhookVerifier
from paysync.services.webhook import WebhookService

logger = logging.getLogger(__name__)


def build_services(app: FastAPI, settings: Settings, session_factory: async_sessionmaker, redis: Redis,
                   transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
    """Wire the gateway services onto app.state. A missing key disables the part that needs it."""
    try:
        verifier = WebhookVerifier(settings.webhook_key, settings.WEBHOOK_TOLERANCE_SECONDS)
    except ConfigError as e:
        logger.error("Invalid webhook key (%s mode): %s", settings.mode_label, e.message)
        verifier = None

    try:
        client = DodoPaymentsClient.from_settings(settings, transport=transport)
    except ConfigError as e:
        logger.warning("%s mode: %s", settings.mode_label, e.message)
        client = None

    app.state.dodo_client = client
    app.state.webhook_service = WebhookService(verifier, session_factory, redis, client, settings)
    app.state.checkout_service = CheckoutService(client, settings, redis)
    app.state.subscription_sync = SubscriptionSync(client, settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(level=settings.LOG_LEVEL,
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    if settings.ENV == 'development':
        await session.init_db()
    build_services(app, settings, session.async_session_factory, redis_client)
    yield
    if app.state.dodo_client is not None:
        await app.state.dodo_client.aclose()
    await close_redis()


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Dodo Payments checkout sync and webhook reconciliation",
        lifespan=lifespan
    )

    app.include_router(
        routes_health.router,
        prefix="/api/v1"
    )

    app.include_router(
        routes_webhook.router,
        prefix="/api/v1/webhooks",
        tags=["webhooks"]
    )

    app.include_router(
        routes_checkout.router,
        prefix="/api/v1",
        tags=["checkout"]
    )

    app.include_router(
        routes_subscription.router,
        prefix="/api/v1",
        tags=["subscriptions"]
    )

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request, ex):
        logger.warning("%s %s -> %s: %s", request.method, request.url.path, ex.status_code, ex.message)
        return JSONResponse(status_code=ex.status_code, content={"result": "failure", "error": ex.message})

    @app.get("/")
    async def root():
        return {"message": f"{settings.APP_NAME} ({settings.mode_label} mode)"}
    return app


app = create_app()
