import logging
from typing import Any, Dict, Optional

import httpx

from libreeze.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)


class BackendHTTPClient:
    """Pooled async HTTP client bound to the backend's base URL and API key."""

    def __init__(self, config: Optional[Settings] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = config or default_settings

        # Connection limits for the single shared client
        limits = httpx.Limits(
            max_keepalive_connections=20,
            max_connections=100,
            keepalive_expiry=30.0
        )

        timeout = httpx.Timeout(
            timeout=self.settings.http_timeout,
            connect=5.0,
        )

        self._client = httpx.AsyncClient(
            base_url=self.settings.backend_url.rstrip("/"),
            headers={"apikey": self.settings.backend_anon_key},
            limits=limits,
            timeout=timeout,
            transport=transport,
        )

    def auth_headers(self, token: Optional[str]) -> Dict[str, str]:
        """Bearer header for the given token, falling back to the anon key."""
        return {"Authorization": f"Bearer {token or self.settings.backend_anon_key}"}

    async def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        response = await self._client.request(method, path, **kwargs)
        if response.is_error:
            logger.warning("%s %s -> %s", method, path, response.status_code)
        return response

    async def post(self, path: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", path, **kwargs)

    async def close(self):
        """Close the underlying connection pool"""
        await self._client.aclose()


def error_message(response: httpx.Response, default: str) -> str:
    """Pull a human-readable message out of a backend error body."""
    try:
        payload = response.json()
    except ValueError:
        return response.text or default
    if not isinstance(payload, dict):
        return default
    for key in ("error_description", "msg", "message", "error"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            return value
    return default
