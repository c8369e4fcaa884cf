"""
HTTP API for the Smart Ranch dashboard.

Exposes history listing, record lookup, dashboard summary and frame
analysis over aiohttp.
"""

from .app import create_app, main
from .middleware import RateLimiter
from .routes import PROVIDER_KEY, SETTINGS_KEY, STORE_KEY

__all__ = [
    "create_app",
    "main",
    "RateLimiter",
    "PROVIDER_KEY",
    "SETTINGS_KEY",
    "STORE_KEY",
]
