"""
API routes for the payment broker.
"""
import uuid
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from payment_broker.core.errors import (
    ConcurrentProcessingError,
    ConfigurationError,
    NotFoundError,
    OrderCreationError,
    PaymentProviderError,
    SignatureError,
    StoreUnavailableError,
    ValidationError,
)
from payment_broker.core.models import CheckoutSession, SessionTotals, compute_amount_cents

from .dependencies import Services, get_services
from .schemas import (
    CheckoutSessionResponse,
    CreateCartSessionRequest,
    HealthCheckResponse,
    PaymentIntentRequest,
    PaymentIntentResponse,
    RotationStatusResponse,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
session_router = APIRouter(prefix="/cart-sessions", tags=["sessions"])
payment_router = APIRouter(prefix="/payments", tags=["payments"])
rotation_router = APIRouter(prefix="/rotation", tags=["rotation"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])


@session_router.post(
    "",
    response_model=CheckoutSessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Capture a cart",
    description="Create a checkout session from a cart snapshot",
)
async def create_cart_session(
    request: CreateCartSessionRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Create a checkout session; totals are derived from the cart lines."""
    items = [
        {**item.model_dump(), "line_price_cents": item.line_total_cents}
        for item in request.items
    ]
    subtotal_cents = request.subtotal_cents
    if subtotal_cents is None:
        subtotal_cents = sum(item["line_price_cents"] for item in items)

    snapshot: Dict[str, Any] = {"items": items}
    if request.cart_id:
        snapshot["cart_id"] = request.cart_id

    session = CheckoutSession(
        session_id=f"session_{uuid.uuid4().hex}",
        cart_snapshot=snapshot,
        totals=SessionTotals(
            subtotal_cents=subtotal_cents,
            shipping_cents=request.shipping_cents,
            discount_cents=request.discount_cents,
            currency=request.currency or services.settings.default_currency,
        ),
        customer=request.customer,
    )

    try:
        created = await services.session_store.create(session)
    except StoreUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    return created.public_view()


@session_router.get(
    "/{session_id}",
    response_model=CheckoutSessionResponse,
    summary="Get a checkout session",
)
async def get_cart_session(
    session_id: str,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """Read a checkout session without its payment secret."""
    try:
        session = await services.session_store.get(session_id)
    except StoreUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return session.public_view()


@payment_router.post(
    "/intent",
    response_model=PaymentIntentResponse,
    summary="Create or refresh a payment request",
    description="Idempotent per checkout session: one PaymentIntent per session",
)
async def create_payment_intent(
    request: PaymentIntentRequest,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    """
    Create or update the session's PaymentIntent.

    The amount is recomputed from the stored cart subtotal plus shipping
    minus discount.
    """
    try:
        session = await services.session_store.get(request.session_id)
        if session is None:
            raise NotFoundError(f"Checkout session {request.session_id} not found")

        shipping_cents = (
            request.shipping_cents
            if request.shipping_cents is not None
            else session.totals.shipping_cents
        )
        discount_cents = (
            request.discount_cents
            if request.discount_cents is not None
            else session.totals.discount_cents
        )
        amount_cents = compute_amount_cents(
            session.totals.subtotal_cents, shipping_cents, discount_cents
        )

        logger.info(
            "api_payment_intent_request",
            session_id=request.session_id,
            amount_cents=amount_cents,
        )

        result = await services.payment_intents.ensure_payment_request(
            request.session_id,
            amount_cents,
            request.currency,
            request.customer,
        )
        return result.model_dump()

    except ValidationError as e:
        logger.warning("api_payment_intent_validation_error", error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    except NotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    except ConfigurationError as e:
        logger.error("api_payment_intent_configuration_error", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Payment configuration error",
        )

    except PaymentProviderError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    except StoreUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))


@rotation_router.get(
    "/status",
    response_model=RotationStatusResponse,
    summary="Rotation status",
    description="Account serving the current rotation window (publishable fields only)",
)
async def rotation_status(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Current account, slot and next rotation time."""
    try:
        result = await services.selector.rotation_status()
    except ConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))
    except StoreUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return result.model_dump()


@webhook_router.post(
    "/stripe",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
    description="Authenticate a Stripe event against the configured accounts and reconcile it",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    services: Services = Depends(get_services),
) -> Any:
    """
    Handle Stripe webhook events.

    Response policy:
    - 200: processed, already processed, ignored, or order creation failed
      (the payment stands; the session stays unmarked for a later pass)
    - 400: signature not verified by any account
    - 503: idempotency state unknown or another delivery in flight; retry
    - 500: no account can verify webhooks
    """
    body = await request.body()

    try:
        result = await services.reconciler.reconcile(body, stripe_signature)

    except SignatureError:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": "invalid_signature"},
        )

    except OrderCreationError as e:
        logger.error("api_webhook_order_creation_failed", session_id=e.session_id, error=str(e))
        return {"received": True, "status": "order_creation_failed"}

    except (ConcurrentProcessingError, StoreUnavailableError) as e:
        logger.warning("api_webhook_retry_requested", error_type=type(e).__name__, error=str(e))
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"error": "retry_later"},
        )

    except ConfigurationError as e:
        logger.error("api_webhook_configuration_error", error=str(e))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "configuration_error"},
        )

    return {
        "received": True,
        "status": result.status.value,
        "event_id": result.event_id,
        "order_id": result.order_id,
        "order_number": result.order_number,
        "warning": result.warning,
    }


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await services.health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await services.health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(services: Services = Depends(get_services)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await services.health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
