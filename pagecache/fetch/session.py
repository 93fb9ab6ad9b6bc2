"""Factories for httpx sessions bound to one upstream store."""
from __future__ import annotations

import contextlib
from typing import AsyncIterator, Optional

import httpx

DEFAULT_USER_AGENT = "pagecache/0.1"


def api_base_url(domain: str, api_version: str) -> str:
    host = domain.removeprefix("https://").removeprefix("http://").rstrip("/")
    return f"https://{host}/admin/api/{api_version}"


@contextlib.asynccontextmanager
async def create_api_session(
    *,
    domain: str,
    access_token: str,
    api_version: str,
    timeout: float,
    user_agent: str = DEFAULT_USER_AGENT,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AsyncIterator[httpx.AsyncClient]:
    """Yield an authenticated client for the duration of the context."""
    headers = {
        "User-Agent": user_agent,
        "X-Shopify-Access-Token": access_token,
        "Content-Type": "application/json",
    }
    limits = httpx.Limits(max_connections=1, max_keepalive_connections=1)
    async with httpx.AsyncClient(
        base_url=api_base_url(domain, api_version),
        headers=headers,
        limits=limits,
        timeout=timeout,
        transport=transport,
    ) as client:
        yield client
