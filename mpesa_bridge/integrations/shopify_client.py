"""
Shopify Admin API client.

Implements:
- Client-credentials token caching (or a static Admin API token)
- One transparent retry after a 401
- Customer lookup by phone
- Creation of orders paid through M-Pesa
- Variant / inventory lookup for cart validation
"""
import asyncio
import time
from typing import Any, Callable, Dict, List, Optional

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from mpesa_bridge.config import Settings, get_settings
from mpesa_bridge.core.models import CartItem, CommerceOrder, Transaction
from mpesa_bridge.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

TOKEN_EXPIRY_MARGIN_SECONDS = 300
PAYMENT_GATEWAY_NAME = "M-Pesa"
ORDER_TAG = "mpesa-payment"


class ShopifyError(Exception):
    """Raised when a Shopify request fails."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ShopifyClient:
    """
    Async client for the Shopify Admin REST API.

    Holds its own token cache; a static ``shopify_access_token`` setting
    bypasses the OAuth exchange entirely.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        time_source: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or get_settings()
        self.store_url = f"https://{self.settings.shopify_store_domain}"
        self.base_url = f"{self.store_url}/admin/api/{self.settings.shopify_api_version}"
        self.http_client = http_client or httpx.AsyncClient(
            timeout=self.settings.http_timeout_seconds
        )
        self.time_source = time_source

        self._access_token: Optional[str] = self.settings.shopify_access_token
        self._token_expiry: Optional[float] = None
        self._token_lock = asyncio.Lock()

        logger.info(
            "shopify_client_initialized",
            store_domain=self.settings.shopify_store_domain,
            api_version=self.settings.shopify_api_version,
            static_token=self.uses_static_token,
        )

    @property
    def uses_static_token(self) -> bool:
        return bool(self.settings.shopify_access_token)

    def _token_valid(self) -> bool:
        if not self._access_token:
            return False
        if self.uses_static_token:
            return True
        return self._token_expiry is not None and self.time_source() < self._token_expiry

    def invalidate_token(self) -> None:
        if self.uses_static_token:
            return
        self._access_token = None
        self._token_expiry = None

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _fetch_token(self) -> Dict[str, Any]:
        response = await self.http_client.post(
            f"{self.store_url}/admin/oauth/access_token",
            data={
                "grant_type": "client_credentials",
                "client_id": self.settings.shopify_client_id,
                "client_secret": self.settings.shopify_client_secret,
            },
        )
        response.raise_for_status()
        return response.json()

    async def get_access_token(self) -> str:
        """
        Get an access token using the client credentials grant.

        Tokens are valid for 24 hours; a new one is requested 5 minutes
        before expiry.

        Raises:
            ShopifyError: If the token cannot be obtained
        """
        if self._token_valid():
            return self._access_token

        async with self._token_lock:
            if self._token_valid():
                return self._access_token

            logger.info("shopify_token_fetch_started")
            start_time = time.time()
            try:
                data = await self._fetch_token()
                access_token = data["access_token"]
                expires_in = int(data.get("expires_in", 86399))
            except httpx.HTTPStatusError as e:
                metrics.record_api_call("shopify", "oauth", "error", time.time() - start_time)
                logger.error(
                    "shopify_oauth_error",
                    status_code=e.response.status_code,
                    error=e.response.text[:500],
                )
                raise ShopifyError(
                    "Failed to get Shopify access token", status_code=e.response.status_code
                ) from e
            except (httpx.HTTPError, KeyError, TypeError, ValueError, AttributeError) as e:
                metrics.record_api_call("shopify", "oauth", "error", time.time() - start_time)
                logger.error("shopify_oauth_error", error=str(e))
                raise ShopifyError(f"Failed to get Shopify access token: {e}") from e

            metrics.record_api_call("shopify", "oauth", "success", time.time() - start_time)

            self._access_token = access_token
            self._token_expiry = self.time_source() + expires_in - TOKEN_EXPIRY_MARGIN_SECONDS

            logger.info(
                "shopify_token_refreshed",
                expires_in=expires_in,
                scope=data.get("scope"),
            )
            return self._access_token

    async def _send(
        self,
        method: str,
        endpoint: str,
        json: Optional[Dict[str, Any]],
        params: Optional[Dict[str, Any]],
    ) -> httpx.Response:
        token = await self.get_access_token()
        return await self.http_client.request(
            method,
            f"{self.base_url}{endpoint}",
            json=json,
            params=params,
            headers={"X-Shopify-Access-Token": token},
        )

    async def request(
        self,
        method: str,
        endpoint: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        operation: str = "request",
    ) -> Dict[str, Any]:
        """
        Make an authenticated Admin API request.

        A 401 clears the cached token and the request is retried once.

        Raises:
            ShopifyError: On transport errors or non-2xx responses
        """
        start_time = time.time()
        try:
            response = await self._send(method, endpoint, json, params)
            if response.status_code == 401 and not self.uses_static_token:
                logger.info("shopify_token_expired_retrying", endpoint=endpoint)
                self.invalidate_token()
                response = await self._send(method, endpoint, json, params)
        except httpx.HTTPError as e:
            metrics.record_api_call("shopify", operation, "error", time.time() - start_time)
            logger.error("shopify_request_failed", endpoint=endpoint, error=str(e))
            raise ShopifyError(f"Shopify request failed: {e}") from e

        status = "success" if response.is_success else "error"
        metrics.record_api_call("shopify", operation, status, time.time() - start_time)

        if not response.is_success:
            try:
                detail = response.json().get("errors", response.text)
            except ValueError:
                detail = response.text
            logger.error(
                "shopify_api_error",
                endpoint=endpoint,
                status_code=response.status_code,
                errors=str(detail)[:500],
            )
            raise ShopifyError(str(detail), status_code=response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise ShopifyError("Invalid JSON in Shopify response") from e

    async def find_customer_by_phone(self, phone: str) -> Optional[Dict[str, Any]]:
        """
        Find an existing customer by phone number.

        Search failures are logged and treated as "no customer".
        """
        normalized = "".join(phone.split())
        try:
            data = await self.request(
                "GET",
                "/customers/search.json",
                params={"query": f"phone:{normalized}"},
                operation="customer_search",
            )
        except ShopifyError as e:
            logger.warning("shopify_customer_search_failed", error=str(e))
            return None

        customers = data.get("customers") or []
        if customers:
            logger.info("shopify_customer_found", customer_id=customers[0].get("id"))
            return customers[0]
        return None

    @staticmethod
    def build_line_items(items: List[CartItem]) -> List[Dict[str, Any]]:
        """Variant lines reference the variant; custom lines carry title and price."""
        line_items = []
        for item in items:
            if item.variant_id:
                line_items.append({"variant_id": item.variant_id, "quantity": item.quantity})
            else:
                line_items.append({
                    "title": item.title,
                    "price": item.price,
                    "quantity": item.quantity,
                    "requires_shipping": True,
                })
        return line_items

    async def create_order_for_transaction(
        self, transaction: Transaction, mpesa_receipt_number: str
    ) -> CommerceOrder:
        """
        Create a paid order for a confirmed transaction.

        Args:
            transaction: The pending transaction being fulfilled
            mpesa_receipt_number: M-Pesa receipt, attached as proof of payment

        Returns:
            CommerceOrder: The created order

        Raises:
            ShopifyError: If the order cannot be created
        """
        shipping = transaction.shipping_address
        address = {
            "first_name": shipping.first_name,
            "last_name": shipping.last_name,
            "address1": shipping.address,
            "address2": "",
            "city": shipping.city,
            "province": shipping.county,
            "country": "Kenya",
            "country_code": "KE",
            "zip": "",
            "phone": transaction.phone,
        }

        existing = await self.find_customer_by_phone(transaction.phone)
        if existing:
            customer: Dict[str, Any] = {"id": existing["id"]}
        else:
            customer = {
                "first_name": address["first_name"],
                "last_name": address["last_name"],
                "email": transaction.email,
                "phone": transaction.phone,
            }

        note = shipping.notes or f"Paid via M-Pesa. Receipt: {mpesa_receipt_number}"
        payload = {
            "order": {
                "line_items": self.build_line_items(transaction.cart_items),
                "customer": customer,
                "email": transaction.email,
                "phone": transaction.phone,
                "shipping_address": address,
                "billing_address": address,
                "financial_status": "paid",
                "fulfillment_status": None,
                "send_receipt": bool(transaction.email),
                "send_fulfillment_receipt": bool(transaction.email),
                "note": note,
                "note_attributes": [
                    {"name": "Payment Method", "value": PAYMENT_GATEWAY_NAME},
                    {"name": "M-Pesa Receipt", "value": mpesa_receipt_number},
                    {"name": "Order Reference", "value": transaction.order_reference},
                ],
                "tags": ORDER_TAG,
                "transactions": [
                    {
                        "kind": "sale",
                        "status": "success",
                        "amount": transaction.amount,
                        "gateway": PAYMENT_GATEWAY_NAME,
                    }
                ],
            }
        }

        logger.info(
            "shopify_order_create_started",
            order_reference=transaction.order_reference,
            line_items=len(payload["order"]["line_items"]),
            amount=transaction.amount,
        )

        data = await self.request("POST", "/orders.json", json=payload, operation="create_order")
        order = data.get("order") or {}
        if "id" not in order:
            raise ShopifyError("Shopify response did not contain an order")

        logger.info(
            "shopify_order_created",
            order_id=order["id"],
            name=order.get("name"),
            order_status_url=order.get("order_status_url"),
        )

        return CommerceOrder(
            id=order["id"],
            name=order.get("name", ""),
            order_status_url=order.get("order_status_url"),
            order_number=order.get("order_number"),
            total_price=order.get("total_price"),
            created_at=order.get("created_at"),
        )

    async def get_variant(self, variant_id: Any) -> Dict[str, Any]:
        data = await self.request("GET", f"/variants/{variant_id}.json", operation="get_variant")
        return data["variant"]

    async def check_inventory(self, variant_id: Any) -> Dict[str, Any]:
        """
        Check whether a variant can be sold.

        Lookup failures are reported as available.
        """
        try:
            variant = await self.get_variant(variant_id)
        except (ShopifyError, KeyError) as e:
            logger.warning("shopify_inventory_check_failed", variant_id=variant_id, error=str(e))
            return {"available": True, "quantity": 0}

        quantity = variant.get("inventory_quantity") or 0
        return {
            "available": quantity > 0 or variant.get("inventory_policy") == "continue",
            "quantity": quantity,
        }

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self.http_client.aclose()
