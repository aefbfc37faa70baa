"""
Global fixtures for all unit tests.

This conftest provides autouse fixtures that prevent real external service calls:
- MongoDB connection attempts (would cause 5-30s timeout per test)
- Environment variable isolation (prevents credential leakage)

It also provides shared builders: real PDFs drawn with reportlab, stored API
key documents with matching raw keys, and a mocked Playwright launch chain.
"""

import os
from io import BytesIO
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from bson import ObjectId

# Set test environment BEFORE any imports to prevent config from loading real values
os.environ["ENVIRONMENT"] = "development"
os.environ.pop("ADMIN_API_SECRET", None)
os.environ.pop("REDIS_URL", None)

from pdf_api import api_keys  # noqa: E402
from pdf_api.auth import ApiKeyContext  # noqa: E402
from pdf_api.persistence import reset_connection  # noqa: E402


@pytest.fixture(autouse=True)
def mock_mongodb():
    """
    Prevent MongoDB connection attempts in all unit tests.

    Repositories open the shared client lazily; without this mock a test that
    forgets an override would wait on localhost:27017.
    """
    reset_connection()
    with patch("pdf_api.persistence.MongoClient") as mock_client:
        mock_instance = MagicMock()
        mock_db = MagicMock()
        mock_collection = MagicMock()

        # Setup chain: client["db"]["collection"]
        mock_instance.__getitem__ = MagicMock(return_value=mock_db)
        mock_db.__getitem__ = MagicMock(return_value=mock_collection)
        mock_collection.find_one = MagicMock(return_value=None)
        mock_collection.find = MagicMock(return_value=[])

        mock_client.return_value = mock_instance
        yield mock_client
    reset_connection()


@pytest.fixture(autouse=True)
def isolate_environment(monkeypatch):
    """
    Isolate test environment from real credentials and configurations.

    This prevents:
    - Real Gemini calls if a test accidentally enables layout repair
    - Real uploads through vault credentials
    - Shared rate-limit state through a real Redis
    """
    monkeypatch.setenv("ENVIRONMENT", "development")
    for name in (
        "ADMIN_API_SECRET",
        "GEMINI_API_KEY",
        "REDIS_URL",
        "VAULT_BUCKET",
        "VAULT_ACCESS_KEY_ID",
        "VAULT_SECRET_ACCESS_KEY",
        "VAULT_ENDPOINT_URL",
        "CORS_ORIGINS",
    ):
        monkeypatch.delenv(name, raising=False)


def build_pdf(pages: int = 1, pagesize=(612, 792)) -> bytes:
    """A real PDF with the given number of pages."""
    from reportlab.pdfgen import canvas

    buffer = BytesIO()
    c = canvas.Canvas(buffer, pagesize=pagesize)
    for number in range(1, pages + 1):
        c.drawString(72, pagesize[1] - 72, f"Page {number}")
        c.showPage()
    c.save()
    return buffer.getvalue()


@pytest.fixture
def pdf_factory():
    """Build real PDFs: pdf_factory(pages=3)."""
    return build_pdf


@pytest.fixture(scope="session")
def key_material():
    """One PBKDF2 derivation per session; hashing is deliberately slow."""
    return api_keys.generate_key_material()


@pytest.fixture
def api_key_doc(key_material):
    """Stored key document as Mongo would return it."""
    doc = api_keys.build_api_key_document(
        name="Production key",
        user_id="64b7f0c2a1b2c3d4e5f60718",
        company_id="company-1",
        material=key_material,
        key_prefix="pk_live_",
    )
    doc["_id"] = ObjectId()
    return doc


@pytest.fixture
def raw_api_key(key_material):
    """The presented form of api_key_doc."""
    return api_keys.format_api_key("pk_live_", key_material.key_id, key_material.raw_secret)


@pytest.fixture
def api_key_context(api_key_doc):
    return ApiKeyContext.from_document(api_key_doc)


@pytest.fixture
def playwright_chain():
    """
    Mocked async_playwright() context manager.

    Returns (factory, page, browser); patch playwright.async_api.async_playwright
    with factory. page.pdf returns a small PDF header by default.
    """
    page = MagicMock()
    page.set_default_timeout = MagicMock()
    page.set_content = AsyncMock()
    page.goto = AsyncMock()
    page.add_style_tag = AsyncMock()
    page.add_script_tag = AsyncMock()
    page.pdf = AsyncMock(return_value=b"%PDF-1.4 fake pdf content")
    page.close = AsyncMock()

    context = MagicMock()
    context.new_page = AsyncMock(return_value=page)
    context.close = AsyncMock()

    browser = MagicMock()
    browser.new_context = AsyncMock(return_value=context)
    browser.close = AsyncMock()

    playwright = MagicMock()
    playwright.chromium.launch = AsyncMock(return_value=browser)

    manager = MagicMock()
    manager.__aenter__ = AsyncMock(return_value=playwright)
    manager.__aexit__ = AsyncMock(return_value=False)

    factory = MagicMock(return_value=manager)
    return factory, page, browser
