"""
PDF Conversion API.

Multi-tenant HTML/URL to PDF service: API-key authentication, usage
logging, page-based credit metering and optional vault storage.
"""

__version__ = "0.1.0"
__version_info__ = (0, 1, 0)
