"""
API routes for M-Pesa checkout payments.
"""
import hmac
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from mpesa_bridge.config import Settings
from mpesa_bridge.core.reconciliation import (
    CALLBACK_ACK,
    ConfirmationOutcome,
    PaymentError,
    TransactionReconciler,
)
from mpesa_bridge.core.validators import PaymentValidationError
from mpesa_bridge.integrations.shopify_client import ShopifyClient
from mpesa_bridge.monitoring.health import HealthCheck
from mpesa_bridge.monitoring.metrics import metrics

from .schemas import (
    CallbackAck,
    HealthCheckResponse,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    PaymentStatusResponse,
    UnresolvedTransactionsResponse,
    ValidateCartRequest,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


def get_settings_dep(request: Request) -> Settings:
    return request.app.state.settings


def get_reconciler(request: Request) -> TransactionReconciler:
    return request.app.state.reconciler


def get_shopify_client(request: Request) -> ShopifyClient:
    return request.app.state.shopify_client


def get_health_check(request: Request) -> HealthCheck:
    return request.app.state.health_check


def _secret_matches(expected: str, provided: Optional[str]) -> bool:
    if provided is None:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


async def require_admin_key(
    request: Request,
    settings: Settings = Depends(get_settings_dep),
) -> None:
    """Admin endpoints are hidden unless an admin key is configured."""
    if not settings.admin_api_key:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")

    provided = request.headers.get(settings.api_key_header)
    if not _secret_matches(settings.admin_api_key, provided):
        logger.warning("admin_api_key_rejected", path=request.url.path)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")


@payment_router.post(
    "/initiate",
    response_model=InitiatePaymentResponse,
    summary="Initiate an M-Pesa payment",
    description="Validate the checkout and send an STK push to the customer's phone",
    responses={400: {"description": "Invalid checkout"}, 500: {"description": "Initiation failed"}},
)
async def initiate_payment(
    request: InitiatePaymentRequest,
    reconciler: TransactionReconciler = Depends(get_reconciler),
) -> Any:
    """
    Start a checkout.

    The response carries the CheckoutRequestID the storefront polls with.
    """
    try:
        result = await reconciler.initiate(request.to_checkout_data())

    except PaymentValidationError as e:
        logger.warning("api_initiate_validation_error", errors=e.errors)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "errors": e.errors},
        )

    except PaymentError as e:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "message": str(e)},
        )

    except Exception as e:
        logger.error(
            "api_initiate_unexpected_error", error=str(e), error_type=type(e).__name__
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"success": False, "message": "Payment initiation failed"},
        )

    return InitiatePaymentResponse(
        message=result.message,
        checkout_request_id=result.checkout_request_id,
        order_reference=result.order_reference,
    )


@payment_router.post(
    "/confirm",
    response_model=CallbackAck,
    summary="Daraja confirmation callback",
    description="CallBackURL target for STK push results. Always acknowledged.",
)
async def confirm_payment(
    request: Request,
    secret: Optional[str] = None,
    settings: Settings = Depends(get_settings_dep),
    reconciler: TransactionReconciler = Depends(get_reconciler),
) -> Dict[str, Any]:
    """
    Handle a Daraja callback.

    Every path, including malformed bodies and internal failures, returns
    the ack.
    """
    if settings.daraja_callback_secret and not _secret_matches(
        settings.daraja_callback_secret, secret
    ):
        logger.warning(
            "confirmation_secret_mismatch",
            client_host=request.client.host if request.client else None,
        )
        metrics.record_confirmation(ConfirmationOutcome.REJECTED.value)
        return CALLBACK_ACK

    try:
        payload = await request.json()
    except ValueError as e:
        logger.error("confirmation_body_not_json", error=str(e))
        payload = None

    try:
        await reconciler.handle_confirmation(payload)
    except Exception as e:
        logger.error(
            "confirmation_processing_error", error=str(e), error_type=type(e).__name__
        )

    return CALLBACK_ACK


@payment_router.get(
    "/status/{checkout_request_id}",
    response_model=PaymentStatusResponse,
    response_model_exclude_none=True,
    summary="Get payment status",
    description="Poll the outcome of an STK push",
    responses={404: {"description": "Transaction not found"}},
)
async def get_payment_status(
    checkout_request_id: str,
    reconciler: TransactionReconciler = Depends(get_reconciler),
) -> Any:
    """Get payment status by CheckoutRequestID."""
    try:
        view = await reconciler.get_status(checkout_request_id)
    except Exception as e:
        logger.error(
            "api_get_payment_status_error",
            checkout_request_id=checkout_request_id,
            error=str(e),
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "success": False,
                "status": "error",
                "message": "Failed to check payment status",
            },
        )

    if view is None:
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content={
                "success": False,
                "status": "not_found",
                "message": "Transaction not found",
            },
        )

    return PaymentStatusResponse(
        success=view.success,
        status=view.status,
        message=view.message,
        mpesa_receipt_number=view.mpesa_receipt_number,
        order_number=view.order_number,
        order_status_url=view.order_status_url,
        order_reference=view.order_reference,
    )


@payment_router.post(
    "/validate-cart",
    summary="Validate cart",
    description="Check that cart items are in stock before asking for payment",
)
async def validate_cart(
    request: ValidateCartRequest,
    shopify_client: ShopifyClient = Depends(get_shopify_client),
) -> Any:
    """Validate a cart before payment."""
    items = request.cart_items
    if not items:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"valid": False, "error": "Cart is empty"},
        )

    unavailable = []
    try:
        for item in items:
            variant_id = item.get("variant_id") if isinstance(item, dict) else None
            if not variant_id:
                continue
            inventory = await shopify_client.check_inventory(variant_id)
            if not inventory["available"]:
                unavailable.append({
                    "variant_id": variant_id,
                    "title": item.get("title"),
                    "quantity": inventory["quantity"],
                })
    except Exception as e:
        logger.error("api_validate_cart_error", error=str(e))
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"valid": False, "error": "Failed to validate cart"},
        )

    if unavailable:
        logger.info("cart_items_unavailable", count=len(unavailable))
        return {
            "valid": False,
            "error": "Some items are out of stock",
            "unavailable": unavailable,
        }

    return {"valid": True, "message": "Cart validated successfully"}


@admin_router.get(
    "/transactions/unresolved",
    response_model=UnresolvedTransactionsResponse,
    summary="Paid transactions without an order",
    description="Transactions whose payment was confirmed but whose Shopify order failed",
    dependencies=[Depends(require_admin_key)],
)
async def list_unresolved_transactions(
    reconciler: TransactionReconciler = Depends(get_reconciler),
) -> Dict[str, Any]:
    transactions = [txn.to_audit_dict() for txn in reconciler.list_unresolved()]
    return {"count": len(transactions), "transactions": transactions}


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Liveness check reporting the Daraja environment",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.liveness()


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,  # Don't include in OpenAPI docs
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
