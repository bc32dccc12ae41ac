"""
Storefront Checkout API
=======================
FastAPI server exposing checkout, payment verification and gateway webhooks.

Endpoints:
- POST /orders/calculate  - cart -> breakdown & totals
- POST /orders/create     - cart + customer -> gateway order for hosted checkout
- POST /orders/verify     - client payment callback -> confirmed order
- POST /webhooks/gateway  - signed gateway events
- GET  /orders/{order_id} - order summary
- GET  /health

pip install fastapi uvicorn pydantic structlog
"""

import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from storefront.config import Settings
from storefront.database import Database, close_database, init_database
from storefront.logger import configure_logging, get_logger
from storefront.pipeline.errors import CheckoutError
from storefront.schemas.api import (
    BreakdownOut,
    CalculateRequest,
    CalculateResponse,
    ClientPaymentCallback,
    CreateOrderRequest,
    CreateOrderResponse,
    OrderResponse,
    OrderSummary,
)
from storefront.services.checkout_service import CheckoutService
from storefront.tasks.reconciliation_sweep import SweepConfig, start_sweep

VERSION = "1.0.0"

logger = get_logger("server")


def create_app(settings: Optional[Settings] = None, service: Optional[CheckoutService] = None) -> FastAPI:
    """Build the app. Passing ``service`` skips database and gateway wiring."""
    settings = settings or Settings.from_env()

    # =========================================================================
    # LIFESPAN MANAGEMENT
    # =========================================================================

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic"""
        configure_logging(settings.log_level, settings.log_format)
        settings.validate()
        logger.info("server_starting", version=VERSION, env=settings.env, store=settings.store_backend)

        owns_service = service is None
        if owns_service:
            if settings.store_backend == "postgres":
                await init_database(settings)
            app.state.service = CheckoutService.from_settings(settings)
        else:
            app.state.service = service

        sweep_task = start_sweep(app.state.service, SweepConfig.from_settings(settings))

        yield

        logger.info("server_shutting_down")
        if sweep_task is not None:
            sweep_task.cancel()
        if owns_service:
            await app.state.service.close()
            if settings.store_backend == "postgres":
                await close_database()

    # =========================================================================
    # FASTAPI APP
    # =========================================================================

    app = FastAPI(
        title="Storefront Checkout",
        description="Tax computation, gateway orders and exactly-once payment reconciliation",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.started_at = datetime.now(timezone.utc)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # =========================================================================
    # MIDDLEWARE
    # =========================================================================

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = str(uuid.uuid4())[:8]
        start = time.perf_counter()

        response = await call_next(request)

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id

        return response

    # =========================================================================
    # ERROR HANDLERS
    # =========================================================================

    @app.exception_handler(CheckoutError)
    async def checkout_error_handler(request: Request, exc: CheckoutError):
        log = logger.bind(**exc.details).bind(path=request.url.path, code=exc.code)
        if exc.http_status >= 500:
            log.error("request_failed", error=str(exc))
        else:
            log.warning("request_rejected", error=str(exc))
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(part) for part in err["loc"][1:]), "message": err["msg"]}
            for err in exc.errors()
        ]
        logger.info("request_invalid", path=request.url.path, errors=len(errors))
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "Invalid request", "details": errors},
        )

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.error("unhandled_error", path=request.url.path, error=str(exc), exc_info=exc)
        return JSONResponse(status_code=500, content={"success": False, "error": "Internal server error"})

    def get_service(request: Request) -> CheckoutService:
        return request.app.state.service

    # =========================================================================
    # HEALTH
    # =========================================================================

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint"""
        uptime = (datetime.now(timezone.utc) - app.state.started_at).total_seconds()
        database_connected = None
        if settings.store_backend == "postgres" and service is None:
            database_connected = await Database.health_check()
        return {
            "status": "healthy" if database_connected is not False else "degraded",
            "version": VERSION,
            "uptimeSeconds": round(uptime, 2),
            "storeBackend": settings.store_backend,
            "databaseConnected": database_connected,
            "sweepEnabled": settings.sweep_enabled,
        }

    # =========================================================================
    # ORDER ENDPOINTS
    # =========================================================================

    @app.post("/orders/calculate", response_model=CalculateResponse)
    async def calculate(body: CalculateRequest, request: Request):
        financials = get_service(request).calculate(body.line_items(), body.delivery_charge)
        return CalculateResponse(breakdown=BreakdownOut.from_financials(financials))

    @app.post("/orders/create", response_model=CreateOrderResponse)
    async def create_order(body: CreateOrderRequest, request: Request):
        session = await get_service(request).create_checkout(
            items=body.line_items(),
            delivery_charge=body.delivery_charge,
            customer=body.customer.to_customer(),
            shipping_address=body.shipping_address.to_address(),
        )
        return CreateOrderResponse(
            draft_id=session.draft_id,
            gateway_order_id=session.gateway_order_id,
            amount=session.amount,
            currency=session.currency,
            breakdown=BreakdownOut.from_financials(session.financials),
            key_id=session.key_id,
            expires_at=session.expires_at,
        )

    @app.post("/orders/verify", response_model=OrderResponse)
    async def verify_payment(body: ClientPaymentCallback, request: Request):
        result = await get_service(request).verify_payment(body)
        return OrderResponse(order=OrderSummary.from_order(result.order), replayed=result.replayed)

    @app.get("/orders/{order_id}", response_model=OrderResponse)
    async def get_order(order_id: str, request: Request):
        order = await get_service(request).get_order(order_id)
        return OrderResponse(order=OrderSummary.from_order(order))

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    @app.post("/webhooks/gateway")
    async def gateway_webhook(request: Request):
        """Razorpay webhook. The raw body is what the signature covers."""
        raw_body = await request.body()
        result = await get_service(request).handle_webhook(
            raw_body,
            request.headers.get("x-razorpay-signature"),
            event_id=request.headers.get("x-razorpay-event-id"),
        )
        return {"received": True, **result}

    return app


app = create_app()


# =============================================================================
# MAIN
# =============================================================================

def main():
    settings = app.state.settings
    uvicorn.run(
        "storefront.api.server:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="info",
    )


if __name__ == "__main__":
    main()
