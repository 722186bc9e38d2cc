"""
Pydantic schemas for API request/response models.

Field names on the wire are camelCase to match the storefront checkout
script; Python attributes stay snake_case.
"""
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class ShippingDetails(BaseModel):
    """Shipping block of a checkout request. Checked in depth by the validators."""

    full_name: Optional[str] = Field(default=None, alias="fullName")
    address: Optional[str] = None
    city: Optional[str] = None
    county: Optional[str] = None
    notes: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class InitiatePaymentRequest(BaseModel):
    """Request schema for starting an STK push checkout."""

    phone: Optional[str] = Field(default=None, description="Kenyan mobile number")
    email: Optional[str] = Field(default=None, description="Optional receipt email")
    shipping: Optional[ShippingDetails] = None
    amount: Optional[Union[float, str]] = Field(default=None, description="Total in KES")
    cart_items: Optional[List[Any]] = Field(default=None, alias="cartItems")
    cart_token: Optional[str] = Field(default=None, alias="cartToken")

    model_config = ConfigDict(
        populate_by_name=True,
        extra="ignore",
        json_schema_extra={
            "examples": [
                {
                    "phone": "0712345678",
                    "email": "buyer@example.com",
                    "shipping": {
                        "fullName": "Jane Wanjiku",
                        "address": "12 Moi Avenue",
                        "city": "Nairobi",
                        "county": "Nairobi",
                    },
                    "cartItems": [{"variant_id": 44012345678, "quantity": 2}],
                    "amount": 2500,
                    "cartToken": "c1-abc123",
                }
            ]
        },
    )

    def to_checkout_data(self) -> Dict[str, Any]:
        """Wire-shaped dict understood by ``validate_payment_request``."""
        return self.model_dump(by_alias=True)


class InitiatePaymentResponse(BaseModel):
    """Response schema for a started checkout."""

    success: bool = True
    message: str
    checkout_request_id: str = Field(..., alias="checkoutRequestId")
    order_reference: str = Field(..., alias="orderRef")

    model_config = ConfigDict(populate_by_name=True)


class PaymentStatusResponse(BaseModel):
    """What the storefront sees while polling a checkout."""

    success: bool
    status: str = Field(
        ..., description="pending, processing, completed, failed or order_error"
    )
    message: str
    mpesa_receipt_number: Optional[str] = Field(default=None, alias="mpesaReceiptNumber")
    order_number: Optional[str] = Field(default=None, alias="orderNumber")
    order_status_url: Optional[str] = Field(default=None, alias="orderStatusUrl")
    order_reference: Optional[str] = Field(default=None, alias="orderRef")

    model_config = ConfigDict(populate_by_name=True)


class CallbackAck(BaseModel):
    """Acknowledgement Daraja expects for every callback."""

    result_code: int = Field(default=0, alias="ResultCode")
    result_desc: str = Field(default="Accepted", alias="ResultDesc")

    model_config = ConfigDict(populate_by_name=True)


class ValidateCartRequest(BaseModel):
    cart_items: Optional[List[Any]] = Field(default=None, alias="cartItems")
    total_amount: Optional[Union[float, str]] = Field(default=None, alias="totalAmount")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    timestamp: str = Field(..., description="Check time (ISO 8601)")
    environment: str = Field(..., description="Daraja environment")


class UnresolvedTransaction(BaseModel):
    """A paid transaction whose Shopify order could not be created."""

    checkout_request_id: str = Field(..., alias="checkoutRequestId")
    merchant_request_id: Optional[str] = Field(default=None, alias="merchantRequestId")
    order_reference: str = Field(..., alias="orderRef")
    phone: str
    email: Optional[str] = None
    amount: int
    state: str
    mpesa_receipt_number: Optional[str] = Field(default=None, alias="mpesaReceiptNumber")
    error: Optional[str] = None
    created_at: str = Field(..., alias="createdAt")
    completed_at: Optional[str] = Field(default=None, alias="completedAt")
    history: List[Dict[str, Any]] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)


class UnresolvedTransactionsResponse(BaseModel):
    count: int
    transactions: List[UnresolvedTransaction]
