#==========================================================================================
# importer/http_client.py
# Thin JSON-over-HTTP helper shared by the vendor, WooCommerce and translation clients.
# One httpx.AsyncClient per request, bounded timeout, no retries.
#==========================================================================================
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

import httpx

from importer.config import settings
from importer.errors import UpstreamError

logger = logging.getLogger("uvicorn.error")


def _error_message(payload: Any) -> Optional[str]:
    """Pull the upstream's own error text out of a decoded body, if it has one."""
    if isinstance(payload, dict):
        lowered = {str(k).lower(): v for k, v in payload.items()}
        for key in ("message", "error", "detail"):
            val = lowered.get(key)
            if isinstance(val, str) and val.strip():
                return val.strip()
            if isinstance(val, dict):
                inner = _error_message(val)
                if inner:
                    return inner
    return None


class HttpClient:
    def __init__(
        self,
        timeout: float | None = None,
        verify: bool | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout = timeout if timeout is not None else settings.HTTP_TIMEOUT
        self.verify = settings.HTTP_VERIFY_TLS if verify is None else verify
        self.transport = transport

    def _client(self, timeout: float | None) -> httpx.AsyncClient:
        kwargs: Dict[str, Any] = {"timeout": timeout or self.timeout, "verify": self.verify}
        if self.transport is not None:
            kwargs["transport"] = self.transport
        return httpx.AsyncClient(**kwargs)

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: Dict[str, Any] | None = None,
        json_body: Any = None,
        headers: Dict[str, str] | None = None,
        auth: Any = None,
        timeout: float | None = None,
    ) -> Any:
        """
        Send one request and return the decoded JSON body (None for empty bodies).
        Raises UpstreamError on transport failure, non-2xx status or undecodable JSON.
        """
        async with self._client(timeout) as client:
            try:
                resp = await client.request(
                    method, url, params=params, json=json_body, headers=headers, auth=auth
                )
            except httpx.HTTPError as e:
                logger.warning("[HTTP] %s %s failed: %s", method, url, e)
                raise UpstreamError(f"Request failed: {e}", url=url) from e

        payload: Any = None
        decode_error: Exception | None = None
        if resp.content:
            try:
                payload = resp.json()
            except (json.JSONDecodeError, ValueError) as e:
                decode_error = e

        if not 200 <= resp.status_code < 300:
            msg = _error_message(payload) or resp.reason_phrase or "error"
            logger.warning("[HTTP] %s %s -> %s %s", method, url, resp.status_code, resp.text[:500])
            raise UpstreamError(
                f"HTTP {resp.status_code}: {msg}",
                upstream_status=resp.status_code,
                url=url,
                payload=payload,
            )

        if decode_error is not None:
            raise UpstreamError(
                f"Invalid JSON response: {decode_error}",
                upstream_status=resp.status_code,
                url=url,
            )
        return payload

    async def get(self, url: str, **kwargs) -> Any:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> Any:
        return await self.request("POST", url, **kwargs)

    async def put(self, url: str, **kwargs) -> Any:
        return await self.request("PUT", url, **kwargs)
