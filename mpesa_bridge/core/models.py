"""
Transaction model and its state machine.

State machine:
    PENDING → COMPLETED
            → FAILED
            → PAYMENT_RECEIVED_ORDER_FAILED

Every non-pending state is terminal. Transitions are only made by the
confirmation handler; status polling never mutates a transaction.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class TransactionState(str, Enum):
    """Transaction lifecycle states."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    PAYMENT_RECEIVED_ORDER_FAILED = "payment_received_order_failed"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionState.PENDING


class InvalidTransitionError(Exception):
    """Raised when a transition is attempted from a terminal state."""

    def __init__(self, checkout_request_id: str, current: TransactionState, target: TransactionState):
        super().__init__(
            f"Cannot move transaction {checkout_request_id} from {current.value} to {target.value}"
        )
        self.checkout_request_id = checkout_request_id
        self.current = current
        self.target = target


@dataclass(frozen=True)
class CartItem:
    """A storefront cart line. Either variant_id or title identifies it."""

    quantity: int
    variant_id: Optional[Any] = None
    title: Optional[str] = None
    price: Optional[Any] = None


@dataclass(frozen=True)
class ShippingAddress:
    full_name: str
    address: str
    city: str
    county: str
    notes: Optional[str] = None

    @property
    def first_name(self) -> str:
        return self.full_name.split(" ")[0] if self.full_name else ""

    @property
    def last_name(self) -> str:
        return " ".join(self.full_name.split(" ")[1:]) if self.full_name else ""


@dataclass(frozen=True)
class CommerceOrder:
    """The Shopify order created for a paid transaction."""

    id: Any
    name: str  # display number, e.g. "#1001"
    order_status_url: Optional[str] = None
    order_number: Optional[int] = None
    total_price: Optional[str] = None
    created_at: Optional[str] = None


@dataclass
class Transaction:
    """
    A push payment correlated by its Daraja CheckoutRequestID.

    Invariants:
    - mpesa_receipt_number is set iff Daraja confirmed the payment
    - commerce_order is set iff state is COMPLETED
    """

    checkout_request_id: str
    merchant_request_id: Optional[str]
    order_reference: str
    phone: str
    amount: int
    shipping_address: ShippingAddress
    cart_items: List[CartItem]
    created_at: datetime
    email: Optional[str] = None
    cart_token: Optional[str] = None
    state: TransactionState = TransactionState.PENDING
    completed_at: Optional[datetime] = None
    mpesa_receipt_number: Optional[str] = None
    commerce_order: Optional[CommerceOrder] = None
    error_detail: Optional[str] = None
    history: List[Dict[str, Any]] = field(default_factory=list)

    def _transition(self, target: TransactionState, now: datetime) -> None:
        if self.state.is_terminal:
            raise InvalidTransitionError(self.checkout_request_id, self.state, target)
        self.history.append(
            {"from": self.state.value, "to": target.value, "at": now.isoformat()}
        )
        self.state = target
        self.completed_at = now

    def complete(self, receipt: str, order: CommerceOrder, now: datetime) -> None:
        """Payment confirmed and order created."""
        self._transition(TransactionState.COMPLETED, now)
        self.mpesa_receipt_number = receipt
        self.commerce_order = order

    def fail(self, description: Optional[str], now: datetime) -> None:
        """Payment failed or was cancelled by the customer."""
        self._transition(TransactionState.FAILED, now)
        self.error_detail = description

    def fail_fulfillment(self, receipt: str, error: str, now: datetime) -> None:
        """
        Payment confirmed but the order could not be created.

        The receipt is kept for manual follow-up.
        """
        self._transition(TransactionState.PAYMENT_RECEIVED_ORDER_FAILED, now)
        self.mpesa_receipt_number = receipt
        self.error_detail = error

    def to_audit_dict(self) -> Dict[str, Any]:
        """Summary used by the admin endpoint and eviction logs."""
        return {
            "checkoutRequestId": self.checkout_request_id,
            "merchantRequestId": self.merchant_request_id,
            "orderRef": self.order_reference,
            "phone": self.phone,
            "email": self.email,
            "amount": self.amount,
            "state": self.state.value,
            "mpesaReceiptNumber": self.mpesa_receipt_number,
            "error": self.error_detail,
            "createdAt": self.created_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "history": list(self.history),
        }


@dataclass(frozen=True)
class StatusView:
    """What a polling client sees for a transaction."""

    status: str
    success: bool
    message: str
    mpesa_receipt_number: Optional[str] = None
    order_number: Optional[str] = None
    order_status_url: Optional[str] = None
    order_reference: Optional[str] = None
