"""Health endpoint tests."""

import pytest


@pytest.mark.asyncio
async def test_health_returns_ok(client):
    """Health endpoint should return server status, version and socket counts."""
    resp = await client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert data["server"] == "ok"
    assert data["database"] == "ok"
    assert data["relay"] == "local"
    assert "version" in data


@pytest.mark.asyncio
async def test_health_counts_connections(client, connect):
    await connect("u1")
    await connect("u1")
    await connect("u2", online=False)

    data = (await client.get("/api/v1/health")).json()
    assert data["connections"] == 3
    assert data["online_users"] == 1
