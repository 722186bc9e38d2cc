"""M-Pesa STK push payments for Shopify storefronts."""

__version__ = "0.1.0"
