"""FastAPI application and routes."""
from .main import app, create_app
from .schemas import (
    CreateCartSessionRequest,
    PaymentIntentRequest,
    PaymentIntentResponse,
    WebhookResponse,
)

__all__ = [
    "app",
    "create_app",
    "CreateCartSessionRequest",
    "PaymentIntentRequest",
    "PaymentIntentResponse",
    "WebhookResponse",
]
