from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from checkout_service.catalog import CatalogStore
from checkout_service.checkout import CheckoutOrchestrator
from checkout_service.config import Settings, load_settings
from checkout_service.database import Base, create_db_engine, create_session_factory
from checkout_service.errors import CheckoutError, InvalidRequest, StoreUnavailable
from checkout_service.gateway import PaymentGatewayClient
from checkout_service.ledger import OrderLedger
from checkout_service.log import configure_logging
from checkout_service.reservations import ReservationEngine
from checkout_service.routes import router
from checkout_service.signature import SignatureVerifier
from checkout_service.webhooks import WebhookReconciler

logger = structlog.get_logger(__name__)


def create_app(settings: Optional[Settings] = None, gateway: Optional[PaymentGatewayClient] = None) -> FastAPI:
    """Build the service. Run with ``uvicorn checkout_service.main:create_app --factory``."""
    settings = settings or load_settings()
    configure_logging(settings.log_level)

    engine = create_db_engine(settings.database_url)
    session_factory = create_session_factory(engine)
    gateway = gateway or PaymentGatewayClient(
        access_token=settings.mp_access_token,
        api_base=settings.mp_api_base,
        timeout=settings.http_timeout_seconds,
        max_retries=settings.http_max_retries,
        use_sandbox=settings.mp_use_sandbox,
    )
    reservations = ReservationEngine(session_factory, ttl_minutes=settings.reservation_ttl_minutes)
    ledger = OrderLedger(session_factory, reservations, provider=gateway.provider)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        Base.metadata.create_all(bind=engine)
        logger.info("app.started", currency=settings.currency)
        yield
        gateway.close()
        engine.dispose()
        logger.info("app.stopped")

    app = FastAPI(title="Checkout & Payment Reconciliation Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.gateway = gateway
    app.state.reservations = reservations
    app.state.ledger = ledger
    app.state.checkout = CheckoutOrchestrator(
        catalog=CatalogStore(session_factory),
        ledger=ledger,
        gateway=gateway,
        currency=settings.currency,
        notification_url=settings.notification_url,
        back_urls=settings.back_urls,
        ttl=timedelta(minutes=settings.reservation_ttl_minutes),
    )
    app.state.reconciler = WebhookReconciler(
        verifier=SignatureVerifier(settings.mp_webhook_secret, settings.signature_schemes),
        gateway=gateway,
        ledger=ledger,
        session_factory=session_factory,
    )

    app.include_router(router)

    @app.exception_handler(CheckoutError)
    async def checkout_error_handler(request: Request, exc: CheckoutError):
        return JSONResponse(status_code=exc.http_status, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        error = InvalidRequest("malformed request body", errors=[e.get("msg") for e in exc.errors()])
        return JSONResponse(status_code=error.http_status, content=error.to_dict())

    @app.exception_handler(SQLAlchemyError)
    async def store_error_handler(request: Request, exc: SQLAlchemyError):
        logger.error("app.store_error", path=request.url.path, error=str(exc))
        error = StoreUnavailable("order store unavailable, try again")
        return JSONResponse(status_code=error.http_status, content=error.to_dict())

    @app.get("/webhooks/mercadopago")
    def mercadopago_webhook_health():
        return {"ok": True}

    @app.post("/webhooks/mercadopago")
    async def mercadopago_webhook(request: Request):
        payload = await request.body()
        result = await run_in_threadpool(
            app.state.reconciler.handle_notification, payload, request.headers, query=request.query_params
        )
        return JSONResponse(status_code=result.status_code, content=result.body)

    return app
