"""Translate stored routes into a Caddy admin API config document.

Pure and deterministic: the same routes and settings always produce the
same tree, whatever order the routes arrive in. Routes that cannot be
rendered are left out and reported in `BuildResult.skipped`.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from orchestrator.schemas.routes import (
    DEFAULT_LOAD_BALANCING,
    DEFAULT_REDIRECT_CODE,
    FileServerConfig,
    HandlerType,
    HeaderConfig,
    RedirectConfig,
    ReverseProxyConfig,
    Route,
    parse_handler_config,
)
from orchestrator.schemas.settings import GlobalConfig
from orchestrator.schemas.sync import SkippedRoute


logger = logging.getLogger(__name__)

# The admin endpoint must survive every load, otherwise the next sync has
# nothing to talk to.
ADMIN_LISTEN = "0.0.0.0:2019"
SERVER_NAME = "srv0"
SERVER_LISTEN = [":443", ":80"]

Handler = dict[str, Any]


class RouteSkip(Exception):
    """Internal signal: this route cannot be rendered."""


@dataclass
class BuildResult:
    config: dict[str, Any]
    skipped: list[SkippedRoute] = field(default_factory=list)

    @property
    def route_count(self) -> int:
        servers = self.config.get("apps", {}).get("http", {}).get("servers", {})
        return sum(len(server.get("routes", [])) for server in servers.values())


def serialize_config(config: dict[str, Any]) -> str:
    """Stable text form of a config tree, used for history and diffing."""
    return json.dumps(config, sort_keys=True, indent=2)


def build_config(routes: Iterable[Route], global_config: GlobalConfig | None = None) -> BuildResult:
    """Build the full config tree for one instance."""
    config: dict[str, Any] = {"admin": {"listen": ADMIN_LISTEN}}
    skipped: list[SkippedRoute] = []

    enabled = [route for route in routes if route.enabled]
    if not enabled:
        return BuildResult(config=config, skipped=skipped)

    # id breaks ties so duplicate (domain, path) pairs still order stably
    enabled.sort(key=lambda r: (r.domain, r.path or "", r.id))

    caddy_routes: list[dict[str, Any]] = []
    for route in enabled:
        try:
            caddy_routes.append(build_route(route, global_config))
        except RouteSkip as skip:
            logger.warning("Skipping route %s (%s): %s", route.id, route.domain, skip)
            skipped.append(SkippedRoute(route_id=route.id, domain=route.domain, reason=str(skip)))

    config["apps"] = {
        "http": {
            "servers": {
                SERVER_NAME: {
                    "listen": list(SERVER_LISTEN),
                    "routes": caddy_routes,
                }
            }
        }
    }
    return BuildResult(config=config, skipped=skipped)


def build_route(route: Route, global_config: GlobalConfig | None = None) -> dict[str, Any]:
    """Build one terminal Caddy route. Raises RouteSkip if it cannot be rendered."""
    match: dict[str, Any] = {"host": [route.domain]}
    if route.path:
        match["path"] = [route.path]

    handlers: list[Handler] = []

    if global_config is not None and global_config.enable_encode:
        handlers.append(build_encode_handler())

    headers_handler = build_headers_handler(route.headers)
    if headers_handler is not None:
        handlers.append(headers_handler)

    if route.strip_prefix:
        handlers.append({"handler": "rewrite", "strip_path_prefix": route.strip_prefix})

    handlers.append(build_terminal_handler(route))

    return {
        "match": [match],
        "handle": handlers,
        "terminal": True,
    }


def build_terminal_handler(route: Route) -> Handler:
    try:
        config = parse_handler_config(route.handler_type, route.config)
    except ValueError as exc:
        raise RouteSkip(f"invalid {route.handler_type} config: {exc}") from exc

    if route.handler_type == HandlerType.REVERSE_PROXY.value:
        return build_reverse_proxy_handler(config)
    if route.handler_type == HandlerType.FILE_SERVER.value:
        return build_file_server_handler(config)
    if route.handler_type == HandlerType.REDIRECT.value:
        return build_redirect_handler(config)
    raise RouteSkip(f"unsupported handler type '{route.handler_type}'")


def build_encode_handler() -> Handler:
    return {
        "handler": "encode",
        "encodings": {
            "zstd": {},
            "gzip": {},
        },
    }


def build_headers_handler(headers: HeaderConfig | None) -> Handler | None:
    if headers is None or headers.is_empty():
        return None

    response: dict[str, Any] = {}
    if headers.set:
        response["set"] = {name: [value] for name, value in sorted(headers.set.items())}
    if headers.add:
        response["add"] = {name: [value] for name, value in sorted(headers.add.items())}
    if headers.delete:
        response["delete"] = list(headers.delete)

    return {
        "handler": "headers",
        "response": response,
    }


def build_reverse_proxy_handler(config: ReverseProxyConfig) -> Handler:
    upstreams = [u.strip() for u in config.upstreams if u and u.strip()]
    if not upstreams:
        raise RouteSkip("reverse_proxy route has no upstreams")

    handler: Handler = {
        "handler": "reverse_proxy",
        "upstreams": [{"dial": upstream} for upstream in upstreams],
    }

    if config.headers:
        handler["headers"] = {
            "request": {
                "set": {name: [value] for name, value in sorted(config.headers.items())},
            }
        }

    if config.load_balancing and config.load_balancing != DEFAULT_LOAD_BALANCING:
        handler["load_balancing"] = {
            "selection_policy": {"policy": config.load_balancing},
        }

    return handler


def build_file_server_handler(config: FileServerConfig) -> Handler:
    handler: Handler = {"handler": "file_server"}

    if config.root:
        handler["root"] = config.root
    if config.browse:
        handler["browse"] = {}
    if config.index:
        handler["index_names"] = list(config.index)
    if config.hide:
        handler["hide"] = list(config.hide)
    if config.precompressed:
        handler["precompressed"] = {
            "gzip": {},
            "zstd": {},
            "br": {},
        }

    return handler


def build_redirect_handler(config: RedirectConfig) -> Handler:
    if not config.to or not config.to.strip():
        raise RouteSkip("redir route has no destination")

    return {
        "handler": "static_response",
        "status_code": config.code or DEFAULT_REDIRECT_CODE,
        "headers": {"Location": [config.to.strip()]},
    }
