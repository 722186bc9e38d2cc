"""Configuration package for the M-Pesa bridge."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
