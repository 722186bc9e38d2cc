"""
Pytest configuration and fixtures.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncGenerator, Callable, Dict, Optional
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio

from mpesa_bridge.api.main import create_app
from mpesa_bridge.config import Settings
from mpesa_bridge.core.models import CommerceOrder
from mpesa_bridge.core.reconciliation import TransactionReconciler
from mpesa_bridge.core.store import TransactionStore
from mpesa_bridge.integrations.daraja_client import DarajaClient, StkPushResult, StkQueryResult
from mpesa_bridge.integrations.shopify_client import ShopifyClient


class FakeClock:
    """Settable clock for retention tests."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        _env_file=None,
        daraja_consumer_key="test_consumer_key",
        daraja_consumer_secret="test_consumer_secret",
        daraja_shortcode="174379",
        daraja_passkey="test_passkey",
        daraja_callback_url="https://bridge.example.com/payments/confirm",
        daraja_env="sandbox",
        shopify_store_domain="test-store.myshopify.com",
        shopify_access_token="shpat_test_token",
        app_name="mpesa-bridge-test",
        app_env="test",
        log_level="DEBUG",
        allowed_origins="https://test-store.myshopify.com",
        sweep_interval_seconds=0,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 3, 1, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def store(clock: FakeClock) -> TransactionStore:
    return TransactionStore(retention_seconds=600, clock=clock)


@pytest.fixture
def mock_daraja() -> AsyncMock:
    """Daraja client that accepts every push and reports it as pending."""
    daraja = AsyncMock(spec=DarajaClient)
    daraja.transaction_type = "CustomerPayBillOnline"
    daraja.initiate_stk_push.return_value = StkPushResult(
        checkout_request_id="ws_CO_01032025093000123456",
        merchant_request_id="29115-34620561-1",
        response_description="Success. Request accepted for processing",
    )
    daraja.query_stk_status.return_value = StkQueryResult(
        result_code="PENDING",
        result_desc="The transaction is being processed",
        checkout_request_id="ws_CO_01032025093000123456",
    )
    return daraja


@pytest.fixture
def sample_order() -> CommerceOrder:
    return CommerceOrder(
        id=5501234567890,
        name="#1001",
        order_status_url="https://test-store.myshopify.com/orders/abc/authenticate",
        order_number=1001,
        total_price="2500.00",
    )


@pytest.fixture
def mock_shopify(sample_order: CommerceOrder) -> AsyncMock:
    shopify = AsyncMock(spec=ShopifyClient)
    shopify.create_order_for_transaction.return_value = sample_order
    shopify.check_inventory.return_value = {"available": True, "quantity": 10}
    return shopify


@pytest.fixture
def reconciler(
    mock_daraja: AsyncMock,
    mock_shopify: AsyncMock,
    store: TransactionStore,
    test_settings: Settings,
) -> TransactionReconciler:
    return TransactionReconciler(mock_daraja, mock_shopify, store=store, settings=test_settings)


@pytest.fixture
def sample_checkout() -> Dict[str, Any]:
    """Sample checkout request body."""
    return {
        "phone": "0712 345 678",
        "email": "wanjiku@example.com",
        "shipping": {
            "fullName": "Jane Wanjiku Kamau",
            "address": "12 Moi Avenue, 3rd Floor",
            "city": "Nairobi",
            "county": "Nairobi",
            "notes": "Call on arrival",
        },
        "cartItems": [
            {"variant_id": 44012345678, "quantity": 2, "price": "1000.00"},
            {"title": "Gift wrapping", "quantity": 1, "price": "500.00"},
        ],
        "amount": 2500,
        "cartToken": "c1-7f3a9b",
    }


@pytest.fixture
def callback_factory() -> Callable[..., Dict[str, Any]]:
    """Build Daraja STK callback bodies."""

    def build(
        checkout_request_id: str = "ws_CO_01032025093000123456",
        result_code: int = 0,
        result_desc: str = "The service request is processed successfully.",
        receipt: Optional[str] = "SC17ABCDEF",
        amount: Any = 2500,
    ) -> Dict[str, Any]:
        callback: Dict[str, Any] = {
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": checkout_request_id,
            "ResultCode": result_code,
            "ResultDesc": result_desc,
        }
        if result_code == 0:
            items = [
                {"Name": "Amount", "Value": amount},
                {"Name": "TransactionDate", "Value": 20250301093512},
                {"Name": "PhoneNumber", "Value": 254712345678},
            ]
            if receipt is not None:
                items.insert(1, {"Name": "MpesaReceiptNumber", "Value": receipt})
            callback["CallbackMetadata"] = {"Item": items}
        return {"Body": {"stkCallback": callback}}

    return build


@pytest_asyncio.fixture
async def app_client(
    test_settings: Settings,
    mock_daraja: AsyncMock,
    mock_shopify: AsyncMock,
    store: TransactionStore,
) -> AsyncGenerator[httpx.AsyncClient, Any]:
    """HTTP client bound to a fully started application."""
    app = create_app(
        test_settings,
        daraja_client=mock_daraja,
        shopify_client=mock_shopify,
        store=store,
    )
    async with app.router.lifespan_context(app):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            yield client
