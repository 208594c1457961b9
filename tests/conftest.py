"""Pytest configuration and fixtures."""

import os
from collections.abc import Generator
from decimal import Decimal
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing application modules
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SUPABASE_URL", "https://test-project.supabase.co")
os.environ.setdefault("SUPABASE_SECRET_KEY", "test-secret-key")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_stripe_secret_key")
os.environ.setdefault("STRIPE_PUBLISHABLE_KEY", "pk_test_stripe_publishable_key")

ORDER_ID = "770e8400-e29b-41d4-a716-446655440000"
SELLER_ID = "880e8400-e29b-41d4-a716-446655440000"
ACCOUNT_ID = "acct_seller_123"


@pytest.fixture(scope="session")
def test_settings() -> Generator[Any, None, None]:
    """Provide test settings with cleared cache.

    Yields:
        Settings: Test configuration settings.
    """
    from src.core.config import get_settings

    get_settings.cache_clear()

    settings = get_settings()
    yield settings

    get_settings.cache_clear()


@pytest.fixture
def settlement_config() -> Any:
    """Money-core config with the default 10% platform fee."""
    from src.core.config import SettlementConfig

    return SettlementConfig(platform_fee_percentage=Decimal("10"), currency="usd", max_quantity_per_product=100)


@pytest.fixture
def mock_supabase_client() -> Generator[MagicMock, None, None]:
    """Provide a mocked Supabase client.

    Yields:
        MagicMock: Mocked Supabase client for testing.
    """
    mock_client = MagicMock()

    mock_response = MagicMock()
    mock_response.data = []
    mock_client.table.return_value.select.return_value.limit.return_value.execute.return_value = (
        mock_response
    )

    with patch("src.core.supabase.get_supabase_client", return_value=mock_client):
        yield mock_client


@pytest.fixture
def client(mock_supabase_client: MagicMock) -> Generator[TestClient, None, None]:
    """Provide a test client for the FastAPI application.

    Args:
        mock_supabase_client: Mocked Supabase client fixture.

    Yields:
        TestClient: FastAPI test client.
    """
    from src.main import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def paid_order() -> dict[str, Any]:
    """Order of 5000 cents: one line, two units, nothing refunded yet."""
    return {
        "id": ORDER_ID,
        "order_number": "ORD-1001",
        "tenant_id": SELLER_ID,
        "status": "paid",
        "currency": "usd",
        "items": [
            {
                "id": "item_1",
                "product_id": "prod_1",
                "name_snapshot": "Walnut Desk Organizer",
                "quantity": 2,
                "unit_amount_cents": 2500,
                "amount_total_cents": 5000,
            }
        ],
        "total_cents": 5000,
        "refunded_total_cents": 0,
        "stripe_payment_intent_id": "pi_123",
        "stripe_charge_id": "ch_123",
        "stripe_account_id": ACCOUNT_ID,
    }
