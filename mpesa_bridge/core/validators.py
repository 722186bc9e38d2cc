"""
Validation and normalization of checkout input.

Every function here is pure: it never touches the network or the
transaction table, so a checkout request can be rejected before any call
to Daraja is made.
"""
import math
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from mpesa_bridge.core.models import CartItem, ShippingAddress

MAX_AMOUNT_KES = 500_000

PHONE_PATTERNS = (
    re.compile(r"^0[17]\d{8}$"),  # 0712345678 / 0112345678
    re.compile(r"^254[17]\d{8}$"),  # 254712345678
    re.compile(r"^\+254[17]\d{8}$"),  # +254712345678
    re.compile(r"^[17]\d{8}$"),  # 712345678
)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

KENYA_COUNTIES = (
    "Baringo", "Bomet", "Bungoma", "Busia", "Elgeyo-Marakwet",
    "Embu", "Garissa", "Homa Bay", "Isiolo", "Kajiado",
    "Kakamega", "Kericho", "Kiambu", "Kilifi", "Kirinyaga",
    "Kisii", "Kisumu", "Kitui", "Kwale", "Laikipia",
    "Lamu", "Machakos", "Makueni", "Mandera", "Marsabit",
    "Meru", "Migori", "Mombasa", "Muranga", "Nairobi",
    "Nakuru", "Nandi", "Narok", "Nyamira", "Nyandarua",
    "Nyeri", "Samburu", "Siaya", "Taita-Taveta", "Tana River",
    "Tharaka-Nithi", "Trans-Nzoia", "Turkana", "Uasin Gishu", "Vihiga",
    "Wajir", "West Pokot",
)


class PaymentValidationError(Exception):
    """Raised when checkout input fails validation."""

    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


@dataclass(frozen=True)
class ValidatedCheckout:
    """Normalized checkout input, ready to be sent to Daraja."""

    phone: str
    amount: int
    email: Optional[str]
    shipping: ShippingAddress
    cart_items: List[CartItem]
    cart_token: Optional[str] = None


def format_phone_number(phone: str) -> str:
    """Format a Kenyan phone number as 254XXXXXXXXX (no validation)."""
    cleaned = re.sub(r"\D", "", phone)

    if cleaned.startswith("0"):
        return "254" + cleaned[1:]
    if cleaned.startswith("254"):
        return cleaned
    if len(cleaned) == 9 and cleaned[0] in "17":
        return "254" + cleaned
    return cleaned


def normalize_phone_number(phone: Any) -> str:
    """
    Validate and normalize a Kenyan mobile number.

    Accepts 0712345678, 0112345678, 254712345678, +254712345678 and
    712345678, optionally with spaces, dashes or parentheses.

    Returns:
        str: 12-digit number starting with 254

    Raises:
        ValueError: If the number is missing or not a Kenyan mobile number
    """
    if not phone or not isinstance(phone, str):
        raise ValueError("Phone number is required")

    cleaned = re.sub(r"[\s\-()]", "", phone)
    if not any(pattern.match(cleaned) for pattern in PHONE_PATTERNS):
        raise ValueError("Invalid Kenyan phone number format")

    return format_phone_number(cleaned)


def normalize_amount(amount: Any) -> int:
    """
    Validate an amount and round it up to whole shillings.

    M-Pesa only accepts whole units, so 99.01 becomes 100.

    Raises:
        ValueError: If the amount is not a number in (0, 500000]
    """
    if isinstance(amount, bool) or amount is None:
        raise ValueError("Invalid amount")
    try:
        value = float(amount)
    except (TypeError, ValueError):
        raise ValueError("Invalid amount")
    if math.isnan(value) or math.isinf(value):
        raise ValueError("Invalid amount")

    if value <= 0:
        raise ValueError("Amount must be greater than zero")
    if value > MAX_AMOUNT_KES:
        raise ValueError("Amount exceeds M-Pesa limit (KES 500,000)")

    return math.ceil(value)


def is_valid_email(email: Optional[str]) -> bool:
    """Email is optional; when present it must look like an address."""
    if not email:
        return True
    return isinstance(email, str) and bool(EMAIL_PATTERN.match(email))


def is_valid_county(county: Optional[str]) -> bool:
    normalized = (county or "").strip().lower()
    return any(c.lower() == normalized for c in KENYA_COUNTIES)


def _text(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    return value.strip() if isinstance(value, str) else ""


def validate_shipping_address(
    shipping: Optional[Dict[str, Any]], strict_county: bool = False
) -> List[str]:
    """Return the list of problems with a shipping address (empty when valid)."""
    data = shipping if isinstance(shipping, dict) else {}
    errors = []

    if len(_text(data, "fullName")) < 2:
        errors.append("Full name is required")
    if len(_text(data, "address")) < 5:
        errors.append("Street address is required")
    if len(_text(data, "city")) < 2:
        errors.append("City is required")

    county = _text(data, "county")
    if not county:
        errors.append("County is required")
    elif strict_county and not is_valid_county(county):
        errors.append("Invalid county. Please select a valid Kenyan county.")

    return errors


def validate_cart_items(items: Any) -> List[str]:
    """Return the list of problems with the cart (empty when valid)."""
    if not isinstance(items, list) or not items:
        return ["Cart is empty"]

    errors = []
    for position, item in enumerate(items, start=1):
        if not isinstance(item, dict):
            errors.append(f"Invalid cart item {position}: expected an object")
            continue
        if not item.get("variant_id") and not item.get("title"):
            errors.append(f"Invalid cart item {position}: missing variant_id or title")
        quantity = item.get("quantity")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            errors.append(f"Invalid cart item {position}: quantity must be at least 1")
    return errors


def _build_cart_items(items: Sequence[Dict[str, Any]]) -> List[CartItem]:
    return [
        CartItem(
            variant_id=item.get("variant_id"),
            title=item.get("title"),
            quantity=item["quantity"],
            price=item.get("price"),
        )
        for item in items
    ]


def validate_payment_request(
    data: Dict[str, Any], strict_county: bool = False
) -> ValidatedCheckout:
    """
    Validate a complete checkout request.

    Collects every problem instead of stopping at the first one so the
    storefront can show them all at once.

    Args:
        data: Raw request body (phone, email, shipping, cartItems, amount, cartToken)
        strict_county: Also check the county against the Kenyan county list

    Returns:
        ValidatedCheckout: Normalized input

    Raises:
        PaymentValidationError: With the itemized errors
    """
    errors: List[str] = []

    phone = None
    try:
        phone = normalize_phone_number(data.get("phone"))
    except ValueError as e:
        errors.append(str(e))

    email = data.get("email") or None
    if not is_valid_email(email):
        errors.append("Invalid email address format")

    errors.extend(validate_shipping_address(data.get("shipping"), strict_county))

    amount = None
    try:
        amount = normalize_amount(data.get("amount"))
    except ValueError as e:
        errors.append(str(e))

    errors.extend(validate_cart_items(data.get("cartItems")))

    if errors:
        raise PaymentValidationError(errors)

    shipping = data["shipping"]
    return ValidatedCheckout(
        phone=phone,
        amount=amount,
        email=email,
        shipping=ShippingAddress(
            full_name=_text(shipping, "fullName"),
            address=_text(shipping, "address"),
            city=_text(shipping, "city"),
            county=_text(shipping, "county"),
            notes=_text(shipping, "notes") or None,
        ),
        cart_items=_build_cart_items(data["cartItems"]),
        cart_token=data.get("cartToken"),
    )
