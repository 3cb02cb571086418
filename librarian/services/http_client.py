import logging
from typing import Optional

import httpx

from config import settings

logger = logging.getLogger(__name__)


class StoreHTTPClient:
    """Pooled async HTTP client shared by the hosted store and identity services.

    Calls are made once; failures surface to the caller without retry.
    """

    def __init__(self, timeout: Optional[float] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        limits = httpx.Limits(
            max_keepalive_connections=20,
            max_connections=100,
            keepalive_expiry=30.0
        )

        total = timeout or settings.store_timeout
        timeout_config = httpx.Timeout(
            timeout=total,
            connect=min(5.0, total),
        )

        self._client = httpx.AsyncClient(
            limits=limits,
            timeout=timeout_config,
            follow_redirects=True,
            transport=transport,
        )

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        return await self._client.request(method, url, **kwargs)

    async def get(self, url: str, **kwargs) -> httpx.Response:
        return await self._client.get(url, **kwargs)

    async def post(self, url: str, **kwargs) -> httpx.Response:
        return await self._client.post(url, **kwargs)

    async def close(self):
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


# Global HTTP client instance
_global_client: Optional[StoreHTTPClient] = None


async def get_http_client() -> StoreHTTPClient:
    """Get or create the global HTTP client."""
    global _global_client
    if _global_client is None:
        _global_client = StoreHTTPClient()
    return _global_client


async def cleanup_http_client():
    """Close the global HTTP client."""
    global _global_client
    if _global_client:
        await _global_client.close()
        _global_client = None
