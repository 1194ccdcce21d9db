"""Tests for the Caddy admin API client."""

import json

import httpx
import pytest

from orchestrator.services.caddy_client import (
    ApplyRejected,
    CaddyAdminClient,
    CaddyClientError,
    TransportError,
    UpstreamError,
)


def make_client(handler) -> CaddyAdminClient:
    return CaddyAdminClient("http://caddy:2019/", timeout=1.0, transport=httpx.MockTransport(handler))


def refuse(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)


class TestFetchConfig:
    """Test reading the running config."""

    @pytest.mark.asyncio
    async def test_returns_raw_body(self):
        """fetch_config_raw returns the body untouched."""
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["url"] = str(request.url)
            return httpx.Response(200, text='{"admin": {"listen": "0.0.0.0:2019"}}')

        raw = await make_client(handler).fetch_config_raw()
        assert raw == '{"admin": {"listen": "0.0.0.0:2019"}}'
        assert seen == {"method": "GET", "url": "http://caddy:2019/config/"}

    @pytest.mark.asyncio
    async def test_parsed_config(self):
        """fetch_config parses JSON."""
        client = make_client(lambda request: httpx.Response(200, json={"apps": {}}))
        assert await client.fetch_config() == {"apps": {}}

    @pytest.mark.asyncio
    async def test_empty_config_is_none(self):
        """A fresh instance serves 'null'; an empty body also means no config."""
        assert await make_client(lambda request: httpx.Response(200, text="")).fetch_config() is None
        assert await make_client(lambda request: httpx.Response(200, text="null")).fetch_config() is None

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        """Garbage from the admin API is a client error."""
        client = make_client(lambda request: httpx.Response(200, text="<html>"))
        with pytest.raises(CaddyClientError, match="invalid JSON"):
            await client.fetch_config()

    @pytest.mark.asyncio
    async def test_non_success_status(self):
        """Non-2xx on read raises UpstreamError with status and body."""
        client = make_client(lambda request: httpx.Response(500, text="boom"))
        with pytest.raises(UpstreamError) as exc_info:
            await client.fetch_config_raw()
        assert exc_info.value.status_code == 500
        assert exc_info.value.body == "boom"

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        """Connection failures raise TransportError."""
        with pytest.raises(TransportError, match="cannot reach http://caddy:2019"):
            await make_client(refuse).fetch_config_raw()


class TestApplyConfig:
    """Test replacing the running config."""

    @pytest.mark.asyncio
    async def test_posts_whole_document_to_load(self):
        """apply_config POSTs the config tree to /load."""
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            seen["content_type"] = request.headers["content-type"]
            return httpx.Response(200)

        config = {"admin": {"listen": "0.0.0.0:2019"}}
        await make_client(handler).apply_config(config)
        assert seen == {
            "method": "POST",
            "path": "/load",
            "body": config,
            "content_type": "application/json",
        }

    @pytest.mark.asyncio
    async def test_rejected(self):
        """Non-2xx on load raises ApplyRejected."""
        client = make_client(lambda request: httpx.Response(400, text="unknown module: http.handlers.nope"))
        with pytest.raises(ApplyRejected) as exc_info:
            await client.apply_config({})
        assert exc_info.value.status_code == 400
        assert "unknown module" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_long_error_body_truncated(self):
        client = make_client(lambda request: httpx.Response(400, text="x" * 2000))
        with pytest.raises(ApplyRejected) as exc_info:
            await client.apply_config({})
        assert exc_info.value.body.endswith("... [truncated]")
        assert len(exc_info.value.body) < 600

    @pytest.mark.asyncio
    async def test_timeout(self):
        """Timeouts are transport errors."""

        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(TransportError):
            await make_client(handler).apply_config({})


class TestHealth:
    """Test the liveness probe."""

    @pytest.mark.asyncio
    async def test_any_2xx_is_healthy(self):
        """The body is not inspected."""
        await make_client(lambda request: httpx.Response(200, text="not json")).health()

    @pytest.mark.asyncio
    async def test_non_success_status(self):
        client = make_client(lambda request: httpx.Response(503, text="starting"))
        with pytest.raises(UpstreamError, match="pass health check"):
            await client.health()

    @pytest.mark.asyncio
    async def test_unreachable(self):
        with pytest.raises(CaddyClientError):
            await make_client(refuse).health()

    def test_trailing_slash_removed(self):
        assert CaddyAdminClient("http://caddy:2019///").base_url == "http://caddy:2019"


def undecodable(request: httpx.Request) -> httpx.Response:
    # Claims gzip but the body is not
    return httpx.Response(
        200,
        headers={"Content-Encoding": "gzip"},
        stream=httpx.ByteStream(b"junk"),
    )


class TestUnreadableResponse:
    """A response httpx cannot decode is reported like any other transport failure."""

    @pytest.mark.asyncio
    async def test_health(self):
        with pytest.raises(TransportError, match="DecodingError"):
            await make_client(undecodable).health()

    @pytest.mark.asyncio
    async def test_apply(self):
        with pytest.raises(TransportError):
            await make_client(undecodable).apply_config({})

    @pytest.mark.asyncio
    async def test_fetch(self):
        with pytest.raises(CaddyClientError):
            await make_client(undecodable).fetch_config_raw()
