"""External integrations: Daraja (M-Pesa) and Shopify."""
from .daraja_client import CallbackResult, DarajaClient, DarajaError
from .shopify_client import ShopifyClient, ShopifyError

__all__ = ["CallbackResult", "DarajaClient", "DarajaError", "ShopifyClient", "ShopifyError"]
