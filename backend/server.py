from fastapi import FastAPI, APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional
import logging

from delivery_core.business_rules import BusinessRuleValidator
from delivery_core.config import Settings, get_settings
from delivery_core.indexes import create_indexes
from delivery_core.logging_config import configure_logging
from delivery_core.notifications import NotificationService
from delivery_core.orders import OrderLifecycle
from delivery_core.payments import PaymentReconciler
from delivery_core.paystack import PaystackClient
from delivery_core.recovery import RecoveryAction, RecoveryOrchestrator
from delivery_core.retry import RetryConfig, RetryExecutor
from delivery_core.transactions import TransactionCoordinator, TransactionOptions
from delivery_core.webhooks import WebhookProcessor
from webhook_routes import webhook_router

logger = logging.getLogger(__name__)

HEALTH_TIMEOUT_MS = 5000
SHUTDOWN_TIMEOUT_MS = 30000
RECONNECT_RETRY = RetryConfig(max_attempts=3, initial_delay_ms=500, backoff_multiplier=2, max_delay_ms=2000)


def create_app(settings: Optional[Settings] = None, mongo_client: Optional[AsyncIOMotorClient] = None) -> FastAPI:
    """
    Build the API. mongo_client is created from MONGO_URL unless one is passed in.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level, settings.log_format)
        settings.validate()

        client = mongo_client or AsyncIOMotorClient(settings.mongo_url)
        db = client[settings.db_name]
        await create_indexes(db)

        # Services
        retry_executor = RetryExecutor()
        coordinator = TransactionCoordinator(client, retry_executor=retry_executor)
        validator = BusinessRuleValidator(db)
        orders = OrderLifecycle(
            db, validator, coordinator,
            TransactionOptions(timeout_ms=settings.transaction_timeout_ms, retries=settings.transaction_retries)
        )
        reconciler = PaymentReconciler(
            db, validator, coordinator, orders,
            NotificationService(db),
            retry_executor=retry_executor,
            currency=settings.payment_currency,
            notification_timeout_ms=settings.notification_timeout_ms
        )
        gateway = PaystackClient(
            settings.paystack_secret_key,
            settings.paystack_public_key,
            base_url=settings.paystack_base_url
        )

        app.state.settings = settings
        app.state.mongo_client = client
        app.state.db = db
        app.state.coordinator = coordinator
        app.state.orders = orders
        app.state.payments = reconciler
        app.state.gateway = gateway
        app.state.recovery = RecoveryOrchestrator(retry_executor)
        app.state.webhook_processor = WebhookProcessor(reconciler, settings.paystack_webhook_secret)

        logger.info(f"[STARTUP] Delivery core ready (database: {settings.db_name})")
        yield

        async def close_mongo():
            client.close()

        await app.state.recovery.handle_graceful_shutdown(
            [gateway.aclose, close_mongo],
            timeout_ms=SHUTDOWN_TIMEOUT_MS
        )

    app = FastAPI(
        title="LPG Delivery - Order & Payment Core",
        version="1.0.0",
        description="Order creation, payment reconciliation and recovery for LPG delivery",
        lifespan=lifespan
    )

    app.include_router(api_router)
    app.include_router(webhook_router)

    app.add_middleware(
        CORSMiddleware,
        allow_credentials=True,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    return app


# Create router with /api prefix
api_router = APIRouter(prefix="/api")


@api_router.get("/health")
async def health(request: Request):
    """
    Ping MongoDB behind the circuit breaker; on failure, try to reconnect.
    """
    state = request.app.state

    async def ping():
        await state.mongo_client.admin.command("ping")
        return True

    async def database_check():
        return await state.recovery.execute_with_circuit_breaker(ping, "mongodb", timeout_ms=HEALTH_TIMEOUT_MS)

    result = await state.recovery.perform_health_check_with_recovery(
        [database_check],
        [RecoveryAction(name="mongodb_reconnect", execute=ping, retry=RECONNECT_RETRY)]
    )

    if result["healthy"]:
        status_label = "healthy"
    elif result["recovered"]:
        status_label = "degraded"
    else:
        status_label = "unhealthy"

    body = {
        "status": status_label,
        **result,
        "transactions": state.coordinator.get_stats(),
        "timestamp": datetime.utcnow().isoformat(),
    }
    return JSONResponse(status_code=503 if status_label == "unhealthy" else 200, content=body)


app = create_app()
