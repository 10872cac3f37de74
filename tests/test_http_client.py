"""
Tests for the outbound HTTP client factory.
"""

import asyncio

import httpx

from shared.http_client import DEFAULT_TIMEOUT, get_http_client_with_headers


def run_async(coro):
    """Helper to run async functions in sync tests."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


class TestGetHttpClientWithHeaders:
    def test_default_headers_sent(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"ok": True})

        async def call():
            async with get_http_client_with_headers(
                {"Authorization": "Basic abc"},
                base_url="https://api.lemlist.test/api",
                transport=httpx.MockTransport(handler),
            ) as client:
                return await client.get("/contacts/x")

        response = run_async(call())

        assert response.status_code == 200
        assert seen[0].headers["Authorization"] == "Basic abc"
        assert str(seen[0].url) == "https://api.lemlist.test/api/contacts/x"

    def test_timeouts(self):
        client = get_http_client_with_headers({})
        try:
            assert client.timeout == DEFAULT_TIMEOUT
            assert client.timeout.connect == 5.0
            assert client.timeout.read == 10.0
        finally:
            run_async(client.aclose())
