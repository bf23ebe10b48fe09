import itertools

import pytest
import pytest_asyncio

_seq = itertools.count(1)


@pytest.fixture
def register(client):
    """Factory: register a user and return (user, auth headers)."""

    async def _register(role: str = "PASSENGER", **extra):
        n = next(_seq)
        body = {"email": f"user{n}@example.cl", "name": f"Test User {n}", "role": role, **extra}
        resp = await client.post("/v1/users", json=body)
        assert resp.status_code == 201, resp.text
        data = resp.json()
        return data["user"], {"Authorization": f"Bearer {data['access_token']}"}

    return _register


@pytest_asyncio.fixture
async def passenger(register):
    return await register()


@pytest_asyncio.fixture
async def driver(client, register):
    """A SEDAN driver that is online."""
    user, headers = await register(role="DRIVER", vehicle_type="SEDAN")
    resp = await client.patch(
        f"/v1/drivers/{user['id']}/status", params={"new_status": "available"}, headers=headers
    )
    assert resp.status_code == 200, resp.text
    return user, headers
