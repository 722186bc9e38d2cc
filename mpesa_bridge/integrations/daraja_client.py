"""
Safaricom Daraja API client for Lipa Na M-Pesa Online (STK push).

Implements:
- OAuth client-credentials token caching with an expiry safety margin
- Request signing (timestamp + base64(shortcode + passkey + timestamp))
- STK push initiation and status query
- Callback payload parsing
"""
import asyncio
import base64
import math
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from mpesa_bridge.config import Settings, get_settings
from mpesa_bridge.core.validators import format_phone_number
from mpesa_bridge.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Daraja timestamps are expected in Kenyan local time (no DST).
EAT = timezone(timedelta(hours=3), name="EAT")

TOKEN_EXPIRY_MARGIN_SECONDS = 300
MAX_REFERENCE_LENGTH = 12
MAX_DESCRIPTION_LENGTH = 13

STILL_PROCESSING_ERROR_CODE = "500.001.1001"
PENDING_RESULT_CODE = "PENDING"
# Result codes the status poll reports as still awaiting the customer.
PENDING_RESULT_CODES = frozenset({PENDING_RESULT_CODE, "1", "4999"})


class DarajaError(Exception):
    """Raised when a Daraja request is rejected or cannot be made."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        response_data: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.response_data = response_data


@dataclass(frozen=True)
class StkPushResult:
    checkout_request_id: str
    merchant_request_id: Optional[str]
    response_description: Optional[str] = None


@dataclass(frozen=True)
class StkQueryResult:
    result_code: str
    result_desc: Optional[str]
    checkout_request_id: str

    @property
    def success(self) -> bool:
        return self.result_code == "0"

    @property
    def pending(self) -> bool:
        return self.result_code in PENDING_RESULT_CODES


@dataclass(frozen=True)
class CallbackResult:
    """Normalized STK callback. Metadata fields are only set on success."""

    success: bool
    result_code: Optional[str]
    result_desc: Optional[str]
    merchant_request_id: Optional[str]
    checkout_request_id: Optional[str]
    amount: Optional[Any] = None
    mpesa_receipt_number: Optional[str] = None
    transaction_date: Optional[Any] = None
    phone_number: Optional[Any] = None


class DarajaClient:
    """
    Async client for the Daraja STK push APIs.

    One instance is shared by the application; it holds the cached bearer
    token and the underlying ``httpx.AsyncClient``.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        time_source: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or get_settings()
        self.base_url = self.settings.daraja_base_url
        self.http_client = http_client or httpx.AsyncClient(
            timeout=self.settings.http_timeout_seconds
        )
        self.time_source = time_source

        self._access_token: Optional[str] = None
        self._token_expiry: float = 0.0
        self._token_lock = asyncio.Lock()

        logger.info(
            "daraja_client_initialized",
            environment=self.settings.daraja_env,
            shortcode=self.settings.daraja_shortcode,
            transaction_type=self.transaction_type,
        )

    @property
    def transaction_type(self) -> str:
        if self.settings.daraja_till_no:
            return "CustomerBuyGoodsOnline"
        return "CustomerPayBillOnline"

    @property
    def party_b(self) -> str:
        return self.settings.daraja_till_no or self.settings.daraja_shortcode

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def _fetch_token(self) -> Dict[str, Any]:
        response = await self.http_client.get(
            f"{self.base_url}/oauth/v1/generate",
            params={"grant_type": "client_credentials"},
            auth=(self.settings.daraja_consumer_key, self.settings.daraja_consumer_secret),
        )
        response.raise_for_status()
        return response.json()

    async def get_access_token(self) -> str:
        """
        Get an OAuth access token, reusing the cached one while valid.

        Raises:
            DarajaError: If the token cannot be obtained
        """
        if self._access_token and self.time_source() < self._token_expiry:
            return self._access_token

        async with self._token_lock:
            if self._access_token and self.time_source() < self._token_expiry:
                return self._access_token

            start_time = time.time()
            try:
                data = await self._fetch_token()
                access_token = data["access_token"]
                expires_in = int(data.get("expires_in", 3599))
            except (httpx.HTTPError, KeyError, TypeError, ValueError, AttributeError) as e:
                metrics.record_api_call("daraja", "oauth", "error", time.time() - start_time)
                logger.error("daraja_oauth_error", error=str(e), error_type=type(e).__name__)
                raise DarajaError("Failed to get Daraja access token") from e

            metrics.record_api_call("daraja", "oauth", "success", time.time() - start_time)

            self._access_token = access_token
            self._token_expiry = (
                self.time_source() + expires_in - TOKEN_EXPIRY_MARGIN_SECONDS
            )
            logger.info("daraja_token_refreshed", expires_in=expires_in)
            return self._access_token

    @staticmethod
    def generate_timestamp(now: Optional[datetime] = None) -> str:
        """Timestamp in YYYYMMDDHHmmss, Kenyan local time."""
        now = now or datetime.now(EAT)
        return now.astimezone(EAT).strftime("%Y%m%d%H%M%S")

    def generate_password(self, timestamp: str) -> str:
        """Password = Base64(Shortcode + Passkey + Timestamp)."""
        raw = f"{self.settings.daraja_shortcode}{self.settings.daraja_passkey}{timestamp}"
        return base64.b64encode(raw.encode("utf-8")).decode("utf-8")

    @staticmethod
    def format_phone_number(phone: str) -> str:
        """
        Format a phone number as 254XXXXXXXXX.

        Raises:
            DarajaError: If the result is not a 12 digit 254 number
        """
        formatted = format_phone_number(phone)
        if len(formatted) != 12 or not formatted.startswith("254"):
            raise DarajaError("Invalid phone number format")
        return formatted

    async def _post(self, operation: str, path: str, payload: Dict[str, Any]) -> httpx.Response:
        token = await self.get_access_token()
        start_time = time.time()
        try:
            response = await self.http_client.post(
                f"{self.base_url}{path}",
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
        except httpx.HTTPError as e:
            metrics.record_api_call("daraja", operation, "error", time.time() - start_time)
            logger.error("daraja_request_failed", operation=operation, error=str(e))
            raise DarajaError(f"Daraja {operation} request failed: {e}") from e

        status = "success" if response.is_success else "error"
        metrics.record_api_call("daraja", operation, status, time.time() - start_time)
        return response

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    async def initiate_stk_push(
        self,
        phone_number: str,
        amount: float,
        account_reference: str,
        transaction_desc: str = "Payment",
    ) -> StkPushResult:
        """
        Initiate an STK push (Lipa Na M-Pesa Online).

        Args:
            phone_number: Customer's phone number
            amount: Amount in KES, rounded up to a whole shilling
            account_reference: Order reference (max 12 chars)
            transaction_desc: Description (max 13 chars)

        Returns:
            StkPushResult: Correlation ids for the pending payment

        Raises:
            DarajaError: If Daraja rejects the request or is unreachable
        """
        timestamp = self.generate_timestamp()
        formatted_phone = self.format_phone_number(phone_number)
        rounded_amount = math.ceil(amount)
        reference = account_reference[:MAX_REFERENCE_LENGTH]
        description = transaction_desc[:MAX_DESCRIPTION_LENGTH]

        payload = {
            "BusinessShortCode": self.settings.daraja_shortcode,
            "Password": self.generate_password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": self.transaction_type,
            "Amount": rounded_amount,
            "PartyA": formatted_phone,
            "PartyB": self.party_b,
            "PhoneNumber": formatted_phone,
            "CallBackURL": self.settings.daraja_callback_url,
            "AccountReference": reference,
            "TransactionDesc": description,
        }

        logger.info(
            "stk_push_request",
            phone=formatted_phone,
            amount=rounded_amount,
            reference=reference,
            shortcode=self.settings.daraja_shortcode,
        )

        response = await self._post("stk_push", "/mpesa/stkpush/v1/processrequest", payload)
        data = self._json(response)

        if response.is_success and str(data.get("ResponseCode")) == "0":
            logger.info(
                "stk_push_accepted",
                checkout_request_id=data.get("CheckoutRequestID"),
                merchant_request_id=data.get("MerchantRequestID"),
            )
            return StkPushResult(
                checkout_request_id=data["CheckoutRequestID"],
                merchant_request_id=data.get("MerchantRequestID"),
                response_description=data.get("ResponseDescription"),
            )

        message = (
            data.get("errorMessage")
            or data.get("ResponseDescription")
            or f"STK push failed with HTTP {response.status_code}"
        )
        logger.error(
            "stk_push_rejected",
            status_code=response.status_code,
            error_code=data.get("errorCode") or data.get("ResponseCode"),
            error=message,
        )
        raise DarajaError(
            message,
            error_code=data.get("errorCode") or data.get("ResponseCode"),
            response_data=data,
        )

    async def query_stk_status(self, checkout_request_id: str) -> StkQueryResult:
        """
        Query the status of an STK push.

        ResultCode 0 = success, 1032 = cancelled, 1037 = timeout. A request
        Daraja is still processing is reported as ``PENDING``.

        Raises:
            DarajaError: If the query itself fails
        """
        timestamp = self.generate_timestamp()
        payload = {
            "BusinessShortCode": self.settings.daraja_shortcode,
            "Password": self.generate_password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }

        response = await self._post("stk_query", "/mpesa/stkpushquery/v1/query", payload)
        data = self._json(response)

        logger.info(
            "stk_query_response",
            checkout_request_id=checkout_request_id,
            status_code=response.status_code,
            result_code=data.get("ResultCode"),
            error_code=data.get("errorCode"),
        )

        if data.get("errorCode") == STILL_PROCESSING_ERROR_CODE:
            return StkQueryResult(
                result_code=PENDING_RESULT_CODE,
                result_desc=data.get("errorMessage") or "Transaction still processing",
                checkout_request_id=checkout_request_id,
            )

        if not response.is_success or "ResultCode" not in data:
            raise DarajaError(
                data.get("errorMessage") or f"STK query failed with HTTP {response.status_code}",
                error_code=data.get("errorCode"),
                response_data=data,
            )

        return StkQueryResult(
            result_code=str(data["ResultCode"]),
            result_desc=data.get("ResultDesc"),
            checkout_request_id=checkout_request_id,
        )

    @staticmethod
    def parse_callback(callback_data: Any) -> CallbackResult:
        """
        Parse the callback body Safaricom posts to CallBackURL.

        Raises:
            DarajaError: If the body is not an STK callback envelope
        """
        body = callback_data.get("Body") if isinstance(callback_data, dict) else None
        stk_callback = body.get("stkCallback") if isinstance(body, dict) else None
        if not isinstance(stk_callback, dict):
            raise DarajaError("Invalid callback format")

        result_code = stk_callback.get("ResultCode")
        success = result_code is not None and str(result_code) == "0"

        callback_metadata = stk_callback.get("CallbackMetadata") or {}
        if not isinstance(callback_metadata, dict):
            raise DarajaError("Invalid callback metadata")
        items = callback_metadata.get("Item") or []
        if not isinstance(items, list):
            raise DarajaError("Invalid callback metadata items")

        metadata: Dict[str, Any] = {}
        if success:
            for item in items:
                if isinstance(item, dict) and "Name" in item:
                    metadata[item["Name"]] = item.get("Value")

        return CallbackResult(
            success=success,
            result_code=str(result_code) if result_code is not None else None,
            result_desc=stk_callback.get("ResultDesc"),
            merchant_request_id=stk_callback.get("MerchantRequestID"),
            checkout_request_id=stk_callback.get("CheckoutRequestID"),
            amount=metadata.get("Amount"),
            mpesa_receipt_number=metadata.get("MpesaReceiptNumber"),
            transaction_date=metadata.get("TransactionDate"),
            phone_number=metadata.get("PhoneNumber"),
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self.http_client.aclose()
