from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Optional

import structlog
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from hotel_payments.config import GatewayConfig
from hotel_payments.database import Base, engine, SessionLocal
from hotel_payments.errors import (
    ApplierError,
    AuthenticationError,
    ConfigurationError,
    GatewayError,
    GatewayTimeout,
    GatewayValidationError,
    PaymentError,
    TransportError,
    ValidationError,
)
from hotel_payments.events import DispatchResult, EventRouter
from hotel_payments.logging_config import configure_logging
from hotel_payments.models import utcnow
from hotel_payments.routes import router
from hotel_payments.schemas import WebhookEvent
from hotel_payments.webhooks import WebhookVerifier

logger = structlog.get_logger(__name__)

# most specific first
ERROR_STATUS = (
    (GatewayTimeout, 504),
    (TransportError, 503),
    (ValidationError, 400),
    (GatewayValidationError, 400),
    (AuthenticationError, 502),
    (GatewayError, 502),
    (ConfigurationError, 500),
)


def status_for(exc: PaymentError) -> int:
    for error_class, status_code in ERROR_STATUS:
        if isinstance(exc, error_class):
            return status_code
    return 500


async def payment_error_handler(request: Request, exc: PaymentError):
    status_code = status_for(exc)
    logger.error(
        "Payment request failed",
        path=request.url.path,
        error_class=type(exc).__name__,
        error=exc.message,
        status=status_code,
    )
    body = {"success": False, "error": exc.user_message}
    if isinstance(exc, TransportError):
        body["retryable"] = exc.retryable
    return JSONResponse(status_code=status_code, content=body)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    client = getattr(app.state, "payment_client", None)
    if client is not None:
        await client.aclose()


def apply_event(event: WebhookEvent, clock: Callable[[], datetime]) -> DispatchResult:
    """Blocking database work; the webhook handler runs it in the threadpool."""
    db = SessionLocal()
    try:
        return EventRouter(db, clock=clock).dispatch(event)
    finally:
        db.close()


async def moyasar_webhook(
    request: Request,
    x_moyasar_signature: Optional[str] = Header(None),
    x_moyasar_timestamp: Optional[str] = Header(None),
    x_timestamp: Optional[str] = Header(None),
):
    payload = await request.body()
    timestamp = x_moyasar_timestamp or x_timestamp

    if not x_moyasar_signature:
        logger.error("Webhook rejected: missing signature header")
        raise HTTPException(status_code=400, detail="Missing signature header")
    if not timestamp:
        logger.error("Webhook rejected: missing timestamp header")
        raise HTTPException(status_code=400, detail="Missing timestamp header")

    verifier: WebhookVerifier = request.app.state.webhook_verifier
    try:
        event = verifier.parse(payload, x_moyasar_signature, timestamp)
    except ConfigurationError as exc:
        logger.error("Webhook rejected: verification is not configured", error=exc.message)
        raise HTTPException(status_code=500, detail="Webhook verification is not configured")
    except AuthenticationError:
        raise HTTPException(status_code=401, detail="Invalid signature")
    except ValidationError as exc:
        logger.error("Webhook rejected: invalid payload", error=exc.message)
        raise HTTPException(status_code=400, detail="Invalid payload")

    try:
        result = await run_in_threadpool(apply_event, event, request.app.state.clock)
    except ValidationError as exc:
        logger.error("Webhook event rejected", payment_id=event.payment.id, error=exc.message)
        raise HTTPException(status_code=400, detail=exc.user_message)
    except ApplierError as exc:
        logger.error("Webhook event could not be applied", payment_id=event.payment.id, error=exc.message)
        raise HTTPException(status_code=500, detail="Failed to process webhook")

    if result.aggregate_updated is False:
        logger.error("Booking totals are stale; reprocess the event to repair them", payment_id=event.payment.id)

    logger.info(
        "Webhook processed",
        payment_id=event.payment.id,
        action=result.action,
        outcome=result.outcome.value,
    )
    return {"processed": True}


def create_app(config: Optional[GatewayConfig] = None) -> FastAPI:
    configure_logging()
    config = config or GatewayConfig.from_env()

    app = FastAPI(title="Hotel Payments Service", lifespan=lifespan)
    app.state.config = config
    app.state.webhook_verifier = WebhookVerifier(config)
    app.state.clock = utcnow

    app.include_router(router)
    app.add_exception_handler(PaymentError, payment_error_handler)
    app.add_api_route("/webhook", moyasar_webhook, methods=["POST"])
    app.add_api_route("/payments/moyasar", moyasar_webhook, methods=["PUT"])

    @app.get("/health")
    def health():
        return {"status": "ok", "sandbox": app.state.config.is_sandbox}

    Base.metadata.create_all(bind=engine)
    return app


app = create_app()
