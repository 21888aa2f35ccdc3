"""Role -> capability mapping and bearer-token guards."""
import pytest
from httpx import AsyncClient, ASGITransport
from unittest.mock import AsyncMock, MagicMock

from app.main import app
from app.core.capabilities import Actor, Capability, Role, capabilities_for, parse_role
from app.core.security import create_access_token
from app.db.session import get_session


# ─── Helpers ──────────────────────────────────────────────────────────────────

def make_mock_session():
    """Return an AsyncMock session with a default empty-result execute."""
    mock_result = MagicMock()
    mock_result.scalar_one.return_value = 0
    mock_result.scalars.return_value.all.return_value = []

    mock_session = AsyncMock()
    mock_session.execute = AsyncMock(return_value=mock_result)
    return mock_session


def make_session_override(mock_session):
    async def _override():
        yield mock_session
    return _override


def _auth(role: str, **claims) -> dict:
    return {"Authorization": f"Bearer {create_access_token('user-1', role, **claims)}"}


# ─── Mapping ──────────────────────────────────────────────────────────────────

@pytest.mark.parametrize("raw, expected", [
    ("Super Admin", Role.SUPER_ADMIN),
    ("super_admin", Role.SUPER_ADMIN),
    ("super-admin", Role.SUPER_ADMIN),
    ("Vendor", Role.VENDOR),
    ("SELLER", Role.SELLER),
    ("system", Role.SYSTEM),
    ("AP_CLERK", None),
    ("", None),
    (None, None),
])
def test_parse_role(raw, expected):
    assert parse_role(raw) is expected


def test_super_admin_holds_every_capability():
    assert capabilities_for(Role.SUPER_ADMIN) == frozenset(Capability)


def test_seller_cannot_edit_or_approve():
    seller = Actor.for_role("s-1", Role.SELLER)
    assert seller.can(Capability.ROUTE_ORDERS)
    assert not seller.can(Capability.EDIT_POLICIES)
    assert not seller.can(Capability.APPROVE_POLICIES)


def test_vendor_reports_health_but_does_not_route():
    vendor = Actor.for_role("v-1", Role.VENDOR, vendor_id="abc")
    assert vendor.can(Capability.REPORT_VENDOR_HEALTH)
    assert not vendor.can(Capability.ROUTE_ORDERS)
    assert vendor.vendor_id == "abc"


def test_unknown_role_has_no_capabilities():
    assert capabilities_for(None) == frozenset()


# ─── Guards ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_missing_token_returns_401():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/v1/routing-policies")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_malformed_token_returns_401():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get(
            "/api/v1/routing-policies",
            headers={"Authorization": "Bearer not-a-jwt"},
        )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_unrecognised_role_returns_403():
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/v1/routing-policies", headers=_auth("AP_CLERK"))
    assert response.status_code == 403


@pytest.mark.asyncio
async def test_vendor_token_can_list_policies():
    app.dependency_overrides[get_session] = make_session_override(make_mock_session())
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get("/api/v1/routing-policies", headers=_auth("Vendor"))
    finally:
        app.dependency_overrides.clear()
    assert response.status_code == 200
    assert response.json() == {"items": [], "total": 0}


@pytest.mark.asyncio
async def test_seller_cannot_create_policies():
    app.dependency_overrides[get_session] = make_session_override(make_mock_session())
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.post(
                "/api/v1/routing-policies",
                json={"name": "US", "channel": "shopify", "region": "US", "sla_minutes": 60},
                headers=_auth("Seller"),
            )
    finally:
        app.dependency_overrides.clear()
    assert response.status_code == 403
