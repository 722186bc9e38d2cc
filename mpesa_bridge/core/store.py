"""
In-memory correlation table keyed by CheckoutRequestID.

The table lives in a single process and is owned by one event loop. Plain
dict operations are therefore atomic; what needs protecting is the
read-check-write sequence of a confirmation that awaits Shopify in the
middle, which is what the per-key locks are for.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import structlog

from mpesa_bridge.core.models import Transaction, TransactionState

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DuplicateTransactionError(Exception):
    """Raised when a CheckoutRequestID is already in the table."""

    pass


class TransactionStore:
    """
    Owns every live transaction and its per-key lock.

    Retention:
    - every transaction is evicted once older than ``retention_seconds``
      (measured from ``created_at``), whatever its state
    - ``order_failed_retention_seconds``, when set, replaces that window for
      transactions whose payment arrived but whose order failed
    - a transaction whose lock is held is never evicted
    """

    def __init__(
        self,
        retention_seconds: int = 600,
        order_failed_retention_seconds: Optional[int] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.retention = timedelta(seconds=retention_seconds)
        self.order_failed_retention = (
            timedelta(seconds=order_failed_retention_seconds)
            if order_failed_retention_seconds is not None
            else None
        )
        self.clock = clock
        self._transactions: Dict[str, Transaction] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._transactions)

    def __contains__(self, checkout_request_id: str) -> bool:
        return checkout_request_id in self._transactions

    def now(self) -> datetime:
        return self.clock()

    def insert(self, transaction: Transaction) -> None:
        """
        Add a new transaction.

        Raises:
            DuplicateTransactionError: If the CheckoutRequestID is already live
        """
        key = transaction.checkout_request_id
        if key in self._transactions:
            raise DuplicateTransactionError(f"Transaction {key} already exists")
        self._transactions[key] = transaction
        self._locks[key] = asyncio.Lock()

    def get(self, checkout_request_id: str) -> Optional[Transaction]:
        return self._transactions.get(checkout_request_id)

    def lock(self, checkout_request_id: str) -> asyncio.Lock:
        """
        Per-key lock guarding state transitions of one transaction.

        Keys no longer in the table get a throwaway lock that is not registered.
        """
        lock = self._locks.get(checkout_request_id)
        if lock is None:
            return asyncio.Lock()
        return lock

    def list(self, state: Optional[TransactionState] = None) -> List[Transaction]:
        return [
            txn for txn in self._transactions.values()
            if state is None or txn.state == state
        ]

    def _retention_for(self, transaction: Transaction) -> timedelta:
        if (
            transaction.state == TransactionState.PAYMENT_RECEIVED_ORDER_FAILED
            and self.order_failed_retention is not None
        ):
            return self.order_failed_retention
        return self.retention

    def sweep(self) -> List[Transaction]:
        """
        Evict transactions older than their retention window.

        Returns:
            List[Transaction]: The evicted transactions
        """
        now = self.clock()
        evicted = []

        for key, txn in list(self._transactions.items()):
            if now - txn.created_at <= self._retention_for(txn):
                continue

            lock = self._locks.get(key)
            if lock is not None and lock.locked():
                logger.info("retention_sweep_skipped_locked", checkout_request_id=key)
                continue

            del self._transactions[key]
            self._locks.pop(key, None)
            evicted.append(txn)

        return evicted
