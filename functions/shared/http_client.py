"""
HTTP client factory for outbound API calls.

The webhook runs each side channel under its own `asyncio.run()`, so a
client never outlives the event loop that created it. Callers open the
client as an async context manager:

    async with get_http_client_with_headers(headers) as client:
        response = await client.get(url)
"""

from typing import Optional

import httpx

DEFAULT_TIMEOUT = httpx.Timeout(
    10.0,  # Total timeout
    connect=5.0,  # Connection timeout
)

DEFAULT_LIMITS = httpx.Limits(
    max_connections=10,
    max_keepalive_connections=5,
    keepalive_expiry=30.0,
)


def get_http_client_with_headers(
    headers: dict,
    base_url: str = "",
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """
    Create an HTTP client with service-specific default headers.

    Args:
        headers: Default headers to include in all requests
        base_url: Optional base URL for relative request paths
        transport: Optional transport (tests pass httpx.MockTransport)

    Returns:
        httpx.AsyncClient with custom headers
    """
    return httpx.AsyncClient(
        base_url=base_url,
        timeout=DEFAULT_TIMEOUT,
        limits=DEFAULT_LIMITS,
        follow_redirects=True,
        http2=False,
        headers=headers,
        transport=transport,
    )
