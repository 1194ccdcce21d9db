from __future__ import annotations

import json
import logging
from typing import Any

import httpx


logger = logging.getLogger(__name__)

MAX_ERROR_BODY = 500


class CaddyClientError(Exception):
    """Base class for admin API failures."""
    pass


class TransportError(CaddyClientError):
    """The admin API could not be reached or its response could not be read."""

    def __init__(self, base_url: str, error: Exception):
        self.base_url = base_url
        self.error = error
        super().__init__(f"cannot reach {base_url}: {type(error).__name__}: {error}")


class UpstreamError(CaddyClientError):
    """The admin API answered a read with a non-success status."""

    def __init__(self, status_code: int, body: str, action: str = "read config"):
        self.status_code = status_code
        self.body = body
        super().__init__(f"failed to {action}: status {status_code}, body: {body}")


class ApplyRejected(CaddyClientError):
    """The admin API refused a config load."""

    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"failed to load config: status {status_code}, body: {body}")


def _truncate(body: str) -> str:
    if len(body) > MAX_ERROR_BODY:
        return body[:MAX_ERROR_BODY] + "... [truncated]"
    return body


class CaddyAdminClient:
    """Thin async wrapper around one Caddy admin endpoint.

    No retries: callers decide what a failure means.
    """

    CONFIG_PATH = "/config/"
    LOAD_PATH = "/load"
    HEALTH_PATH = "/config/"

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"Content-Type": "application/json"}
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=self.timeout,
            transport=self._transport,
        )

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            async with self._client() as client:
                return await client.request(method, path, **kwargs)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            # Anything httpx raises, including a body it cannot decode
            logger.debug("Admin API %s %s%s failed: %s", method, self.base_url, path, exc)
            raise TransportError(self.base_url, exc) from exc

    async def fetch_config_raw(self) -> str:
        """Return the instance's current config exactly as served."""
        response = await self._request("GET", self.CONFIG_PATH)
        if not response.is_success:
            raise UpstreamError(response.status_code, _truncate(response.text))
        return response.text

    async def fetch_config(self) -> Any:
        """Return the instance's current config as parsed JSON (None when empty)."""
        raw = await self.fetch_config_raw()
        if not raw.strip():
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CaddyClientError(f"admin API returned invalid JSON: {exc}") from exc

    async def apply_config(self, config: Any) -> None:
        """Replace the whole running config."""
        response = await self._request("POST", self.LOAD_PATH, json=config)
        if not response.is_success:
            raise ApplyRejected(response.status_code, _truncate(response.text))

    async def health(self) -> None:
        """Raise unless the admin API answers a cheap read with a 2xx.

        The body is not inspected.
        """
        response = await self._request("GET", self.HEALTH_PATH)
        if not response.is_success:
            raise UpstreamError(
                response.status_code,
                _truncate(response.text),
                action="pass health check",
            )
