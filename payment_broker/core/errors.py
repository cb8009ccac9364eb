"""
Error taxonomy for the payment broker.

Every error raised across a service boundary derives from PaymentBrokerError
so the HTTP layer can map each class to exactly one response policy.
"""
from typing import Optional


class PaymentBrokerError(Exception):
    """Base exception for payment broker errors."""

    pass


class ConfigurationError(PaymentBrokerError):
    """Raised when no usable payment account is configured."""

    pass


class ValidationError(PaymentBrokerError):
    """Raised when an amount, currency or session input is malformed."""

    pass


class NotFoundError(PaymentBrokerError):
    """Raised when a checkout session or payment reference does not exist."""

    pass


class SignatureError(PaymentBrokerError):
    """
    Raised when no configured account authenticates a webhook payload.

    The message is deliberately generic; which accounts were tried is only
    ever logged.
    """

    def __init__(self, message: str = "Webhook signature could not be verified"):
        super().__init__(message)


class PaymentProviderError(PaymentBrokerError):
    """
    Raised when the upstream charge API fails.

    The upstream message is passed through as-is. Credentials are never part
    of it because they are never formatted into any message.
    """

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        account_label: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        """
        Initialize provider error.

        Args:
            message: Upstream error message
            retryable: Whether the failure is transient
            account_label: Label of the account the call was made with
            original_error: Original SDK exception
        """
        super().__init__(message)
        self.retryable = retryable
        self.account_label = account_label
        self.original_error = original_error


class OrderCreationError(PaymentBrokerError):
    """
    Raised when the commerce platform fails to create an order.

    The payment has already been confirmed at this point; the session is left
    unmarked so an out-of-band pass can retry.
    """

    def __init__(self, message: str, session_id: Optional[str] = None):
        super().__init__(message)
        self.session_id = session_id


class StoreUnavailableError(PaymentBrokerError):
    """Raised when the session store or account registry times out or fails."""

    pass


class ConcurrentProcessingError(PaymentBrokerError):
    """Raised when another reconciliation for the same session is in flight."""

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} is already being reconciled")
        self.session_id = session_id
