"""
Unit tests for the transaction table and the transaction state machine.
"""
from datetime import datetime
from typing import Optional

import pytest

from mpesa_bridge.core.models import (
    CartItem,
    CommerceOrder,
    InvalidTransitionError,
    ShippingAddress,
    Transaction,
    TransactionState,
)
from mpesa_bridge.core.store import DuplicateTransactionError, TransactionStore

from conftest import FakeClock


def make_transaction(checkout_request_id: str, created_at: datetime) -> Transaction:
    return Transaction(
        checkout_request_id=checkout_request_id,
        merchant_request_id="29115-34620561-1",
        order_reference="ORDM7T4Q2K1",
        phone="254712345678",
        amount=1500,
        shipping_address=ShippingAddress(
            full_name="Otieno Ochieng",
            address="Oginga Odinga Street",
            city="Kisumu",
            county="Kisumu",
        ),
        cart_items=[CartItem(quantity=1, variant_id=123)],
        created_at=created_at,
    )


class TestTransactionStateMachine:
    """Transitions out of pending happen once."""

    @pytest.mark.unit
    def test_complete_sets_receipt_and_order(self, clock: FakeClock) -> None:
        txn = make_transaction("ws_CO_1", clock())
        order = CommerceOrder(id=1, name="#1001")

        txn.complete("SC17ABCDEF", order, clock())

        assert txn.state == TransactionState.COMPLETED
        assert txn.mpesa_receipt_number == "SC17ABCDEF"
        assert txn.commerce_order == order
        assert txn.completed_at == clock()
        assert txn.history == [
            {"from": "pending", "to": "completed", "at": clock().isoformat()}
        ]

    @pytest.mark.unit
    def test_fulfillment_failure_keeps_receipt(self, clock: FakeClock) -> None:
        txn = make_transaction("ws_CO_1", clock())

        txn.fail_fulfillment("SC17ABCDEF", "Shopify unavailable", clock())

        assert txn.state == TransactionState.PAYMENT_RECEIVED_ORDER_FAILED
        assert txn.mpesa_receipt_number == "SC17ABCDEF"
        assert txn.commerce_order is None
        assert txn.error_detail == "Shopify unavailable"

    @pytest.mark.unit
    def test_terminal_states_reject_transitions(self, clock: FakeClock) -> None:
        txn = make_transaction("ws_CO_1", clock())
        txn.fail("Request cancelled by user", clock())

        with pytest.raises(InvalidTransitionError):
            txn.complete("SC17ABCDEF", CommerceOrder(id=1, name="#1001"), clock())

        assert txn.state == TransactionState.FAILED
        assert txn.mpesa_receipt_number is None

    @pytest.mark.unit
    def test_audit_dict_uses_wire_names(self, clock: FakeClock) -> None:
        txn = make_transaction("ws_CO_1", clock())
        txn.fail_fulfillment("SC17ABCDEF", "boom", clock())

        audit = txn.to_audit_dict()

        assert audit["checkoutRequestId"] == "ws_CO_1"
        assert audit["state"] == "payment_received_order_failed"
        assert audit["mpesaReceiptNumber"] == "SC17ABCDEF"
        assert audit["history"] == [
            {
                "from": "pending",
                "to": "payment_received_order_failed",
                "at": clock().isoformat(),
            }
        ]
        assert audit["completedAt"] == clock().isoformat()


class TestTransactionStore:
    """Correlation table and retention sweep."""

    @pytest.mark.unit
    def test_insert_and_get(self, store: TransactionStore, clock: FakeClock) -> None:
        txn = make_transaction("ws_CO_1", clock())
        store.insert(txn)

        assert "ws_CO_1" in store
        assert store.get("ws_CO_1") is txn
        assert store.get("ws_CO_missing") is None
        assert len(store) == 1

    @pytest.mark.unit
    def test_duplicate_insert_rejected(self, store: TransactionStore, clock: FakeClock) -> None:
        store.insert(make_transaction("ws_CO_1", clock()))

        with pytest.raises(DuplicateTransactionError):
            store.insert(make_transaction("ws_CO_1", clock()))

    @pytest.mark.unit
    def test_list_filters_by_state(self, store: TransactionStore, clock: FakeClock) -> None:
        pending = make_transaction("ws_CO_1", clock())
        failed = make_transaction("ws_CO_2", clock())
        failed.fail("cancelled", clock())
        store.insert(pending)
        store.insert(failed)

        assert store.list() == [pending, failed]
        assert store.list(TransactionState.FAILED) == [failed]

    @pytest.mark.unit
    def test_sweep_evicts_only_expired(self, store: TransactionStore, clock: FakeClock) -> None:
        store.insert(make_transaction("ws_CO_old", clock()))
        clock.advance(300)
        store.insert(make_transaction("ws_CO_new", clock()))
        clock.advance(300)

        # Exactly at the window edge nothing is evicted yet
        assert store.sweep() == []

        clock.advance(1)
        evicted = store.sweep()

        assert [txn.checkout_request_id for txn in evicted] == ["ws_CO_old"]
        assert "ws_CO_old" not in store
        assert "ws_CO_new" in store

    @pytest.mark.unit
    def test_sweep_applies_to_terminal_states(
        self, store: TransactionStore, clock: FakeClock
    ) -> None:
        txn = make_transaction("ws_CO_1", clock())
        txn.complete("SC17ABCDEF", CommerceOrder(id=1, name="#1001"), clock())
        store.insert(txn)

        clock.advance(601)

        assert store.sweep() == [txn]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sweep_skips_locked_transactions(
        self, store: TransactionStore, clock: FakeClock
    ) -> None:
        store.insert(make_transaction("ws_CO_1", clock()))
        clock.advance(601)

        async with store.lock("ws_CO_1"):
            assert store.sweep() == []
            assert "ws_CO_1" in store

        assert len(store.sweep()) == 1

    @pytest.mark.unit
    @pytest.mark.parametrize("extended", [None, 3600])
    def test_order_failed_retention(self, clock: FakeClock, extended: Optional[int]) -> None:
        store = TransactionStore(
            retention_seconds=600, order_failed_retention_seconds=extended, clock=clock
        )
        txn = make_transaction("ws_CO_1", clock())
        txn.fail_fulfillment("SC17ABCDEF", "boom", clock())
        store.insert(txn)

        clock.advance(601)
        evicted = store.sweep()

        if extended is None:
            assert evicted == [txn]
        else:
            assert evicted == []
            clock.advance(3600)
            assert store.sweep() == [txn]

    @pytest.mark.unit
    def test_lock_for_unknown_key_is_not_registered(self, store: TransactionStore) -> None:
        assert store.lock("ws_CO_missing") is not store.lock("ws_CO_missing")
