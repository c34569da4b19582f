"""Shared fixtures for gateway tests."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from app.core.tenant import RequestContext, TenantContext


@pytest.fixture
def tenant():
    """Sandbox tenant with seller-level write access."""
    return TenantContext(
        tenant_id="tenant-1",
        access_token="EAAAtesttoken1234567890",
        location_id="LOC1234567890",
        environment="sandbox",
        agent_id="agent-1",
        merchant_id="MERCHANT12345",
        timezone="America/New_York",
    )


@pytest.fixture
def ctx(tenant):
    """Request context for the test tenant."""
    return RequestContext(correlation_id="corr-123", tenant=tenant)


@pytest.fixture
def square_client():
    """Square client double with every endpoint as an AsyncMock."""
    client = MagicMock()
    for name in (
        "search_catalog_objects",
        "list_employees",
        "search_team_members",
        "search_availability",
        "search_customers",
        "create_customer",
        "update_customer",
        "retrieve_customer",
        "create_booking",
        "update_booking",
        "cancel_booking",
        "retrieve_booking",
        "list_bookings",
        "close",
    ):
        setattr(client, name, AsyncMock())
    return client


@pytest.fixture
def factory(square_client):
    """Client factory that always hands out `square_client`."""
    mock = MagicMock()
    mock.get_tenant_client.return_value = square_client
    mock.get_client.return_value = square_client
    return mock
