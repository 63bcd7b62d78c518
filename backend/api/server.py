# api/server.py
# ============================================================================
# ALIF STOREFRONT: CHECKOUT & FULFILLMENT API
# ============================================================================
# FastAPI server exposing checkout session creation, the payment webhook,
# order lookups and a health check
# ============================================================================

import hmac
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from database import Database
from pipeline.checkout_service import CheckoutService
from pipeline.errors import StorefrontError
from pipeline.fulfillment import FulfillmentWebhookHandler
from pipeline.payment_gateway import SIGNATURE_HEADER, IPaymentGateway, StripeGateway
from schemas import CheckoutRequest, CheckoutResponse, ManifestLine, PendingOrder, WebhookAck
from storage import (
    IAuditLog,
    ICatalogStore,
    IOrderRepository,
    IProcessedEventStore,
    InMemoryAuditLog,
    InMemoryCatalogStore,
    InMemoryOrderRepository,
    InMemoryProcessedEventStore,
)

VERSION = "1.0.0"


# =============================================================================
# CONFIGURATION
# =============================================================================

class ServerConfig:
    """Server configuration from environment"""

    # Server
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "8000"))
    ENV = os.getenv("ENV", "development")
    DEBUG = ENV == "development"

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")

    # Storage: "postgres" or "memory"
    STORE_BACKEND = os.getenv("STORE_BACKEND", "postgres")

    # Payment gateway
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
    GATEWAY_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10"))
    WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", "300"))

    # Checkout
    CLIENT_URL = os.getenv("CLIENT_URL", "http://localhost:5173")
    CHECKOUT_CURRENCY = os.getenv("CHECKOUT_CURRENCY", "pkr")
    CURRENCY_MINOR_UNITS = int(os.getenv("CURRENCY_MINOR_UNITS", "100"))

    # Shared bearer token for the account service calling order history.
    # Unset means order history is closed.
    ORDERS_API_TOKEN = os.getenv("ORDERS_API_TOKEN")


# =============================================================================
# LOGGING
# =============================================================================

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.dev.ConsoleRenderer(colors=False)
        if ServerConfig.DEBUG else structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger().bind(component="server")


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class OrderSummary(BaseModel):
    """Order as shown on the success page and in the account dashboard."""
    order_id: str
    session_id: str
    status: str
    lines: List[ManifestLine]
    amount_total: int
    currency: str
    created_at: datetime
    fulfilled_at: Optional[datetime] = None

    @classmethod
    def from_order(cls, order: PendingOrder) -> "OrderSummary":
        return cls(
            order_id=order.order_id,
            session_id=order.session_id,
            status=order.status.value,
            lines=order.lines,
            amount_total=order.amount_total,
            currency=order.currency,
            created_at=order.created_at,
            fulfilled_at=order.fulfilled_at,
        )


class HealthResponse(BaseModel):
    status: str
    version: str
    uptime_seconds: float
    catalog_available: bool
    webhook_secret_configured: bool


def _error_response(error: StorefrontError) -> JSONResponse:
    content: Dict[str, Any] = {"error": error.public_message}
    if error.retryable:
        content["retryable"] = True
    return JSONResponse(status_code=error.status_code, content=content)


async def require_account_access(request: Request, authorization: Optional[str] = Header(default=None)) -> None:
    """
    Guard for customer order history. The storefront's account service
    calls it with `Authorization: Bearer <ORDERS_API_TOKEN>`.
    """
    token = request.app.state.config.ORDERS_API_TOKEN
    if not token:
        logger.warning("order_history_disabled", reason="ORDERS_API_TOKEN not set")
        raise HTTPException(status_code=403, detail="Order history is not enabled")

    scheme, _, supplied = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(supplied.encode(), token.encode()):
        raise HTTPException(
            status_code=401,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )


# =============================================================================
# APPLICATION FACTORY
# =============================================================================

def create_app(
    config: Optional[ServerConfig] = None,
    catalog: Optional[ICatalogStore] = None,
    orders: Optional[IOrderRepository] = None,
    processed_events: Optional[IProcessedEventStore] = None,
    audit: Optional[IAuditLog] = None,
    gateway: Optional[IPaymentGateway] = None,
    database: Optional[Database] = None,
) -> FastAPI:
    """
    Build the app. Anything not injected is created from config: asyncpg
    backed stores for STORE_BACKEND=postgres, in-memory ones otherwise.
    """
    config = config or ServerConfig()

    if config.STORE_BACKEND == "postgres" and None in (catalog, orders, processed_events, audit):
        from storage.postgres import (
            PostgresAuditLog,
            PostgresCatalogStore,
            PostgresOrderRepository,
            PostgresProcessedEventStore,
        )
        database = database or Database()
        catalog = catalog or PostgresCatalogStore(database)
        orders = orders or PostgresOrderRepository(database)
        processed_events = processed_events or PostgresProcessedEventStore(database)
        audit = audit or PostgresAuditLog(database)
    else:
        catalog = catalog or InMemoryCatalogStore()
        orders = orders or InMemoryOrderRepository()
        processed_events = processed_events or InMemoryProcessedEventStore()
        audit = audit or InMemoryAuditLog()

    gateway = gateway or StripeGateway(
        api_key=config.STRIPE_SECRET_KEY,
        webhook_secret=config.STRIPE_WEBHOOK_SECRET,
        timeout_seconds=config.GATEWAY_TIMEOUT_SECONDS,
        tolerance_seconds=config.WEBHOOK_TOLERANCE_SECONDS,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic."""
        logger.info("server_starting", version=VERSION, store_backend=config.STORE_BACKEND)

        if not config.STRIPE_WEBHOOK_SECRET and isinstance(gateway, StripeGateway):
            logger.error("webhook_secret_missing", effect="all webhook deliveries will be rejected")

        if database is not None:
            await database.connect()

        yield

        if database is not None:
            await database.close()
        logger.info("server_stopped")

    app = FastAPI(
        title="Alif Storefront Checkout",
        description="Checkout sessions, payment webhook and inventory fulfillment",
        version=VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.config = config
    app.state.database = database
    app.state.catalog = catalog
    app.state.orders = orders
    app.state.audit = audit
    app.state.gateway = gateway
    app.state.started_at = datetime.utcnow()
    app.state.checkout = CheckoutService(
        gateway=gateway,
        orders=orders,
        audit=audit,
        client_url=config.CLIENT_URL,
        currency=config.CHECKOUT_CURRENCY,
        minor_unit_factor=config.CURRENCY_MINOR_UNITS,
    )
    app.state.fulfillment = FulfillmentWebhookHandler(
        gateway=gateway,
        catalog=catalog,
        orders=orders,
        processed_events=processed_events,
        audit=audit,
    )

    _register_routes(app)
    return app


# =============================================================================
# ENDPOINTS
# =============================================================================

def _register_routes(app: FastAPI) -> None:

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing header."""
        start = time.perf_counter()
        response = await call_next(request)
        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        return response

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request):
        state = request.app.state
        uptime = (datetime.utcnow() - state.started_at).total_seconds()
        try:
            catalog_ok = await state.catalog.health_check()
        except Exception as e:
            logger.warning("catalog_health_check_failed", error=str(e))
            catalog_ok = False
        secret_ok = bool(getattr(state.gateway, "webhook_secret_configured", True))
        return HealthResponse(
            status="healthy" if catalog_ok and secret_ok else "degraded",
            version=VERSION,
            uptime_seconds=uptime,
            catalog_available=catalog_ok,
            webhook_secret_configured=secret_ok,
        )

    @app.post("/checkout/create-session", response_model=CheckoutResponse)
    async def create_checkout_session(body: CheckoutRequest, request: Request):
        """
        Create a hosted checkout session for the cart and return its redirect.

        Gateway error detail is logged server-side only.
        """
        try:
            result = await request.app.state.checkout.create_session(body.items, body.email)
        except StorefrontError as e:
            logger.warning("checkout_request_failed",
                           error_type=type(e).__name__,
                           status_code=e.status_code)
            return _error_response(e)
        except Exception as e:
            logger.error("checkout_request_crashed", error=str(e), exc_info=True)
            return JSONResponse(status_code=500, content={"error": "Checkout session creation failed."})

        return CheckoutResponse(id=result.session_id, url=result.checkout_url)

    @app.post("/checkout/webhook", response_model=WebhookAck)
    async def payment_webhook(request: Request):
        """
        Gateway webhook. The body is read raw: it must not be parsed before
        the signature over it has been checked.
        """
        payload = await request.body()
        signature = request.headers.get(SIGNATURE_HEADER)

        try:
            return await request.app.state.fulfillment.handle(payload, signature)
        except StorefrontError as e:
            return _error_response(e)
        except Exception as e:
            logger.error("webhook_crashed", error=str(e), exc_info=True)
            return JSONResponse(status_code=500, content={"error": "Webhook processing failed."})

    @app.get("/checkout/orders/{session_id}", response_model=OrderSummary)
    async def get_order(session_id: str, request: Request):
        """Success-page lookup. The session id comes from the gateway redirect."""
        try:
            order = await request.app.state.orders.get_by_session(session_id)
        except StorefrontError as e:
            return _error_response(e)
        if order is None:
            raise HTTPException(status_code=404, detail="Order not found")
        return OrderSummary.from_order(order)

    @app.get(
        "/checkout/orders",
        response_model=List[OrderSummary],
        dependencies=[Depends(require_account_access)],
    )
    async def list_orders(request: Request, email: str = Query(..., min_length=3), limit: int = Query(20, ge=1, le=100)):
        try:
            orders = await request.app.state.orders.list_by_email(email, limit=limit)
        except StorefrontError as e:
            return _error_response(e)
        return [OrderSummary.from_order(order) for order in orders]


# =============================================================================
# FASTAPI APP
# =============================================================================

app = create_app()


# =============================================================================
# MAIN
# =============================================================================

if __name__ == "__main__":
    uvicorn.run(
        "api.server:app",
        host=ServerConfig.HOST,
        port=ServerConfig.PORT,
        reload=ServerConfig.DEBUG,
        log_level="info",
    )
