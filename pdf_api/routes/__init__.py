"""
PDF API route modules.

Each module handles one area of the public or admin API.
"""

from .api_keys import router as api_keys_router
from .conversions import router as conversions_router
from .logs import router as logs_router
from .system import router as system_router

__all__ = [
    "api_keys_router",
    "conversions_router",
    "logs_router",
    "system_router",
]
