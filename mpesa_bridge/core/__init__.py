"""Core domain: transactions, their table and checkout validation."""
from .models import (
    CartItem,
    CommerceOrder,
    InvalidTransitionError,
    ShippingAddress,
    StatusView,
    Transaction,
    TransactionState,
)
from .store import DuplicateTransactionError, TransactionStore
from .validators import PaymentValidationError, ValidatedCheckout, validate_payment_request

__all__ = [
    "CartItem",
    "CommerceOrder",
    "DuplicateTransactionError",
    "InvalidTransitionError",
    "PaymentValidationError",
    "ShippingAddress",
    "StatusView",
    "Transaction",
    "TransactionState",
    "TransactionStore",
    "ValidatedCheckout",
    "validate_payment_request",
]
