"""Core payment broker logic: rotation, payment requests, reconciliation."""
from .errors import (
    ConcurrentProcessingError,
    ConfigurationError,
    NotFoundError,
    OrderCreationError,
    PaymentBrokerError,
    PaymentProviderError,
    SignatureError,
    StoreUnavailableError,
    ValidationError,
)

__all__ = [
    "PaymentBrokerError",
    "ConfigurationError",
    "ValidationError",
    "NotFoundError",
    "SignatureError",
    "PaymentProviderError",
    "OrderCreationError",
    "StoreUnavailableError",
    "ConcurrentProcessingError",
]
