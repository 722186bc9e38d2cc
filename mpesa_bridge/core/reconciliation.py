"""
Transaction reconciliation core.

Correlates an STK push with its asynchronous Daraja confirmation and
drives Shopify order creation:

1. initiate: validate input, push the payment prompt, record a pending
   transaction keyed by CheckoutRequestID, sweep expired transactions
2. handle_confirmation: parse the callback, move the transaction out of
   pending exactly once, creating the Shopify order on success
3. get_status: report the stored outcome, or ask Daraja while pending
"""
import string
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog

from mpesa_bridge.config import Settings, get_settings
from mpesa_bridge.core.models import StatusView, Transaction, TransactionState
from mpesa_bridge.core.store import DuplicateTransactionError, TransactionStore
from mpesa_bridge.core.validators import PaymentValidationError, validate_payment_request
from mpesa_bridge.integrations.daraja_client import DarajaClient, DarajaError
from mpesa_bridge.integrations.shopify_client import ShopifyClient
from mpesa_bridge.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

ORDER_REFERENCE_PREFIX = "ORD"
TRANSACTION_DESCRIPTION = "Order Payment"
INITIATION_FAILED_MESSAGE = "Failed to initiate payment. Please try again."
CALLBACK_ACK: Dict[str, Any] = {"ResultCode": 0, "ResultDesc": "Accepted"}

_BASE36 = string.digits + string.ascii_uppercase


class PaymentError(Exception):
    """Raised when a payment cannot be initiated. The message is safe to show."""

    pass


class ConfirmationOutcome(str, Enum):
    """What handling a confirmation callback did."""

    SUCCESS = "success"
    FAILED = "failed"
    ORDER_FAILED = "order_failed"
    UNKNOWN = "unknown"
    DUPLICATE = "duplicate"
    INVALID = "invalid"
    REJECTED = "rejected"


@dataclass(frozen=True)
class InitiationResult:
    order_reference: str
    checkout_request_id: str
    message: str = "Payment request sent to your phone"


def _to_base36(value: int) -> str:
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits)) or "0"


def _same_amount(confirmed: Any, expected: int) -> bool:
    try:
        return float(confirmed) == float(expected)
    except (TypeError, ValueError):
        return False


class TransactionReconciler:
    """
    Owns the correlation between STK pushes, confirmations and orders.

    The Daraja and Shopify clients and the transaction store are injected so
    tests can substitute fakes and a fixed clock.
    """

    def __init__(
        self,
        daraja_client: DarajaClient,
        shopify_client: ShopifyClient,
        store: Optional[TransactionStore] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.daraja_client = daraja_client
        self.shopify_client = shopify_client
        self.store = store if store is not None else TransactionStore(
            retention_seconds=self.settings.transaction_retention_seconds,
            order_failed_retention_seconds=self.settings.order_failed_retention_seconds,
        )

        logger.info(
            "transaction_reconciler_initialized",
            retention_seconds=self.settings.transaction_retention_seconds,
            order_failed_retention_seconds=self.settings.order_failed_retention_seconds,
        )

    @staticmethod
    def generate_order_reference(now: datetime) -> str:
        """Short caller-visible reference: ORD + base-36 epoch milliseconds."""
        millis = int(now.timestamp() * 1000)
        return f"{ORDER_REFERENCE_PREFIX}{_to_base36(millis)}"

    async def initiate(self, request: Dict[str, Any]) -> InitiationResult:
        """
        Start a checkout: validate, push the payment prompt, record it.

        Args:
            request: Raw checkout body (phone, email, shipping, cartItems, amount, cartToken)

        Returns:
            InitiationResult: Order reference and CheckoutRequestID

        Raises:
            PaymentValidationError: If the input is invalid (no call to Daraja is made)
            PaymentError: If Daraja rejects the push or cannot be reached
        """
        try:
            checkout = validate_payment_request(
                request, strict_county=self.settings.strict_county_validation
            )
        except PaymentValidationError as e:
            metrics.record_stk_push("invalid")
            logger.info("checkout_validation_failed", errors=e.errors)
            raise

        now = self.store.now()
        order_reference = self.generate_order_reference(now)

        try:
            push = await self.daraja_client.initiate_stk_push(
                checkout.phone,
                checkout.amount,
                order_reference,
                TRANSACTION_DESCRIPTION,
            )
        except DarajaError as e:
            metrics.record_stk_push("rejected")
            logger.error(
                "stk_push_initiation_failed",
                order_reference=order_reference,
                error=str(e),
                error_code=e.error_code,
            )
            raise PaymentError(INITIATION_FAILED_MESSAGE) from e

        transaction = Transaction(
            checkout_request_id=push.checkout_request_id,
            merchant_request_id=push.merchant_request_id,
            order_reference=order_reference,
            phone=checkout.phone,
            amount=checkout.amount,
            shipping_address=checkout.shipping,
            cart_items=checkout.cart_items,
            created_at=now,
            email=checkout.email,
            cart_token=checkout.cart_token,
        )

        try:
            self.store.insert(transaction)
        except DuplicateTransactionError as e:
            metrics.record_stk_push("rejected")
            logger.error(
                "stk_push_duplicate_checkout_request_id",
                checkout_request_id=push.checkout_request_id,
                error=str(e),
            )
            raise PaymentError(INITIATION_FAILED_MESSAGE) from e

        metrics.record_stk_push("initiated", checkout.amount)
        logger.info(
            "stk_push_initiated",
            checkout_request_id=push.checkout_request_id,
            merchant_request_id=push.merchant_request_id,
            order_reference=order_reference,
            amount=checkout.amount,
        )

        self.sweep_expired()

        return InitiationResult(
            order_reference=order_reference,
            checkout_request_id=push.checkout_request_id,
        )

    def sweep_expired(self) -> int:
        """
        Evict transactions past their retention window.

        Returns:
            int: Number of evicted transactions
        """
        evicted = self.store.sweep()
        for txn in evicted:
            metrics.record_eviction(txn.state.value)
            if txn.state == TransactionState.PAYMENT_RECEIVED_ORDER_FAILED:
                # Last trace of a paid order nobody created.
                logger.warning("unresolved_transaction_evicted", **txn.to_audit_dict())
            else:
                logger.info(
                    "transaction_evicted",
                    checkout_request_id=txn.checkout_request_id,
                    state=txn.state.value,
                )
        metrics.set_live_transactions(len(self.store))
        return len(evicted)

    async def handle_confirmation(self, payload: Any) -> ConfirmationOutcome:
        """
        Apply a Daraja confirmation callback.

        Never raises for protocol-level problems: the caller always
        acknowledges the callback.

        Returns:
            ConfirmationOutcome: What the callback did
        """
        start_time = time.time()
        outcome = await self._apply_confirmation(payload)
        metrics.record_confirmation(outcome.value, time.time() - start_time)
        return outcome

    async def _apply_confirmation(self, payload: Any) -> ConfirmationOutcome:
        try:
            result = DarajaClient.parse_callback(payload)
        except DarajaError as e:
            logger.error("confirmation_parse_failed", error=str(e))
            return ConfirmationOutcome.INVALID

        checkout_request_id = result.checkout_request_id
        logger.info(
            "confirmation_received",
            checkout_request_id=checkout_request_id,
            merchant_request_id=result.merchant_request_id,
            result_code=result.result_code,
            result_desc=result.result_desc,
        )

        if not checkout_request_id or checkout_request_id not in self.store:
            logger.warning(
                "confirmation_unknown_transaction",
                checkout_request_id=checkout_request_id,
                result_code=result.result_code,
                mpesa_receipt_number=result.mpesa_receipt_number,
            )
            return ConfirmationOutcome.UNKNOWN

        async with self.store.lock(checkout_request_id):
            transaction = self.store.get(checkout_request_id)
            if transaction is None:
                logger.warning(
                    "confirmation_unknown_transaction",
                    checkout_request_id=checkout_request_id,
                    result_code=result.result_code,
                    mpesa_receipt_number=result.mpesa_receipt_number,
                )
                return ConfirmationOutcome.UNKNOWN

            if transaction.state.is_terminal:
                logger.warning(
                    "confirmation_duplicate_ignored",
                    checkout_request_id=checkout_request_id,
                    state=transaction.state.value,
                    result_code=result.result_code,
                )
                return ConfirmationOutcome.DUPLICATE

            if not result.success:
                transaction.fail(
                    result.result_desc or "Payment failed or was cancelled",
                    self.store.now(),
                )
                logger.info(
                    "payment_failed",
                    checkout_request_id=checkout_request_id,
                    result_code=result.result_code,
                    result_desc=result.result_desc,
                )
                return ConfirmationOutcome.FAILED

            return await self._fulfill(transaction, result.mpesa_receipt_number, result.amount)

    async def _fulfill(
        self, transaction: Transaction, receipt: Optional[str], confirmed_amount: Any
    ) -> ConfirmationOutcome:
        """Create the Shopify order for a confirmed payment. Caller holds the key lock."""
        if receipt is None:
            logger.warning(
                "confirmation_missing_receipt",
                checkout_request_id=transaction.checkout_request_id,
            )
        if confirmed_amount is not None and not _same_amount(confirmed_amount, transaction.amount):
            logger.warning(
                "confirmation_amount_mismatch",
                checkout_request_id=transaction.checkout_request_id,
                expected=transaction.amount,
                confirmed=confirmed_amount,
            )

        try:
            order = await self.shopify_client.create_order_for_transaction(transaction, receipt)
        except Exception as e:
            transaction.fail_fulfillment(receipt, str(e), self.store.now())
            metrics.record_order_creation("failed")
            logger.error(
                "order_creation_failed_after_payment",
                checkout_request_id=transaction.checkout_request_id,
                order_reference=transaction.order_reference,
                mpesa_receipt_number=receipt,
                amount=transaction.amount,
                error=str(e),
                error_type=type(e).__name__,
            )
            return ConfirmationOutcome.ORDER_FAILED

        transaction.complete(receipt, order, self.store.now())
        metrics.record_order_creation("created")
        logger.info(
            "payment_completed",
            checkout_request_id=transaction.checkout_request_id,
            order_reference=transaction.order_reference,
            mpesa_receipt_number=receipt,
            order_id=order.id,
            order_name=order.name,
        )
        return ConfirmationOutcome.SUCCESS

    @staticmethod
    def _terminal_view(transaction: Transaction) -> StatusView:
        if transaction.state == TransactionState.COMPLETED:
            order = transaction.commerce_order
            return StatusView(
                status="completed",
                success=True,
                message="Payment successful",
                mpesa_receipt_number=transaction.mpesa_receipt_number,
                order_number=order.name if order else None,
                order_status_url=order.order_status_url if order else None,
                order_reference=transaction.order_reference,
            )
        if transaction.state == TransactionState.FAILED:
            return StatusView(
                status="failed",
                success=False,
                message=transaction.error_detail or "Payment failed or was cancelled",
                order_reference=transaction.order_reference,
            )
        return StatusView(
            status="order_error",
            success=False,
            message="Payment received but order creation failed. Please contact support.",
            mpesa_receipt_number=transaction.mpesa_receipt_number,
            order_reference=transaction.order_reference,
        )

    async def get_status(self, checkout_request_id: str) -> Optional[StatusView]:
        """
        Report the status of a transaction.

        Terminal transactions are answered from the table. Pending ones are
        checked against Daraja; that check never changes the stored state
        and a failing check is reported as still pending.

        Returns:
            Optional[StatusView]: None if the transaction is unknown
        """
        view = await self._status_view(checkout_request_id)
        metrics.record_status_query(view.status if view else "not_found")
        return view

    async def _status_view(self, checkout_request_id: str) -> Optional[StatusView]:
        transaction = self.store.get(checkout_request_id)
        if transaction is None:
            return None

        if transaction.state.is_terminal:
            return self._terminal_view(transaction)

        pending_view = StatusView(
            status="pending",
            success=False,
            message="Waiting for payment confirmation...",
            order_reference=transaction.order_reference,
        )

        try:
            query = await self.daraja_client.query_stk_status(checkout_request_id)
        except DarajaError as e:
            logger.warning(
                "stk_status_query_failed",
                checkout_request_id=checkout_request_id,
                error=str(e),
            )
            return pending_view

        # The callback may have landed while Daraja was being queried.
        current = self.store.get(checkout_request_id)
        if current is not None and current.state.is_terminal:
            return self._terminal_view(current)

        if query.success:
            return StatusView(
                status="processing",
                success=True,
                message="Payment received, creating order...",
                order_reference=transaction.order_reference,
            )
        if query.pending:
            return pending_view
        return StatusView(
            status="failed",
            success=False,
            message=query.result_desc or "Payment failed or was cancelled",
            order_reference=transaction.order_reference,
        )

    def list_unresolved(self) -> List[Transaction]:
        """Paid transactions whose Shopify order could not be created."""
        return self.store.list(TransactionState.PAYMENT_RECEIVED_ORDER_FAILED)
