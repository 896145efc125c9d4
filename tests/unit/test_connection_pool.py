"""Tests for devflow/utils/connection_pool.py."""

import httpx
import pytest

from devflow.utils.connection_pool import HTTPConnectionPool


@pytest.fixture
def pool():
    return HTTPConnectionPool(
        base_url="https://api.github.com/",
        max_connections=4,
        max_keepalive_connections=8,
        headers={"Authorization": "Bearer ghp_test"},
    )


def use_transport(pool, handler):
    """Open the pool against an in-memory transport."""
    pool._client = httpx.AsyncClient(
        base_url=pool.base_url,
        headers=pool.headers,
        transport=httpx.MockTransport(handler),
    )


class TestHTTPConnectionPool:
    """Tests for the shared GraphQL client."""

    def test_keepalive_bounded_by_max_connections(self, pool):
        assert pool.limits.max_connections == 4
        assert pool.limits.max_keepalive_connections == 4
        assert not pool.is_open

    @pytest.mark.asyncio
    async def test_initialize_and_close(self, pool):
        """The client should be opened once and released on close."""
        client = await pool.initialize()

        assert pool.is_open
        assert await pool.initialize() is client

        await pool.close()
        assert not pool.is_open
        assert client.is_closed

    @pytest.mark.asyncio
    async def test_post_tracks_requests(self, pool):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"data": {}})

        use_transport(pool, handler)

        response = await pool.post("/graphql", json={"query": "query { viewer { login } }"})
        await pool.close()

        assert response.status_code == 200
        assert seen[0].url == "https://api.github.com/graphql"
        assert seen[0].headers["authorization"] == "Bearer ghp_test"
        assert pool.health() == {"open": False, "requests_sent": 1, "last_status": 200}

    @pytest.mark.asyncio
    async def test_context_manager(self, pool):
        async with pool as opened:
            assert opened.is_open

        assert not pool.is_open
