"""Database package for the payment broker."""
from .account_registry import AccountRegistry
from .connection import close_db, init_db
from .models import Base, CheckoutSessionRecord, PaymentAccountRecord
from .session_store import SessionStore

__all__ = [
    "Base",
    "PaymentAccountRecord",
    "CheckoutSessionRecord",
    "AccountRegistry",
    "SessionStore",
    "init_db",
    "close_db",
]
