"""Configuration package for the subscription ledger."""
from .settings import ZERO_ADDRESS, Settings, get_settings

__all__ = ["Settings", "ZERO_ADDRESS", "get_settings"]
