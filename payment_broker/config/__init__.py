"""Configuration package for the payment broker."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
