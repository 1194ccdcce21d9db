from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, Field, model_validator


class HandlerType(str, Enum):
    REVERSE_PROXY = "reverse_proxy"
    FILE_SERVER = "file_server"
    REDIRECT = "redir"


DEFAULT_LOAD_BALANCING = "round_robin"
DEFAULT_REDIRECT_CODE = 302


class ReverseProxyConfig(BaseModel):
    """Payload of a reverse_proxy route."""

    upstreams: list[str] = Field(default_factory=list)
    headers: dict[str, str] = Field(default_factory=dict)
    load_balancing: str | None = None
    websocket: bool = False


class FileServerConfig(BaseModel):
    """Payload of a file_server route."""

    root: str | None = None
    browse: bool = False
    index: list[str] = Field(default_factory=list)
    hide: list[str] = Field(default_factory=list)
    precompressed: bool = False


class RedirectConfig(BaseModel):
    """Payload of a redir route."""

    to: str = ""
    code: int = DEFAULT_REDIRECT_CODE


class HeaderConfig(BaseModel):
    """Response header manipulation rules."""

    set: dict[str, str] = Field(default_factory=dict)
    add: dict[str, str] = Field(default_factory=dict)
    delete: list[str] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.set or self.add or self.delete)


# Unknown handler types keep their raw document so they survive a round trip
# through the store; the builder skips them.
HandlerConfig = Union[dict[str, Any], ReverseProxyConfig, FileServerConfig, RedirectConfig]

CONFIG_MODELS: dict[str, type[BaseModel]] = {
    HandlerType.REVERSE_PROXY.value: ReverseProxyConfig,
    HandlerType.FILE_SERVER.value: FileServerConfig,
    HandlerType.REDIRECT.value: RedirectConfig,
}


def is_known_handler_type(handler_type: str) -> bool:
    return handler_type in CONFIG_MODELS


def parse_handler_config(handler_type: str, raw: Any) -> HandlerConfig:
    """Resolve a raw handler payload into the variant selected by handler_type."""
    model = CONFIG_MODELS.get(handler_type)
    if isinstance(raw, BaseModel):
        if model is not None and isinstance(raw, model):
            return raw
        raw = raw.model_dump()
    if model is None:
        return dict(raw) if isinstance(raw, dict) else {}
    return model.model_validate(raw or {})


def dump_handler_config(config: HandlerConfig) -> dict[str, Any]:
    if isinstance(config, BaseModel):
        return config.model_dump()
    return dict(config)


class RouteBase(BaseModel):
    domain: str
    path: str = ""
    strip_prefix: str = ""
    handler_type: str
    config: HandlerConfig = Field(default_factory=dict, union_mode="left_to_right")
    headers: HeaderConfig | None = None

    @model_validator(mode="after")
    def _resolve_config_variant(self):
        self.config = parse_handler_config(self.handler_type, self.config)
        if self.headers is not None and self.headers.is_empty():
            self.headers = None
        return self


class RouteCreate(RouteBase):
    """Request to create a route. New routes are always enabled."""

    instance_id: str | None = None


class RouteUpdate(RouteBase):
    """Full replacement of a route's editable fields.

    `enabled` is kept unchanged when omitted.
    """

    enabled: bool | None = None


class Route(RouteBase):
    id: str
    instance_id: str
    enabled: bool = True
    created_at: datetime
    updated_at: datetime


class RouteResponse(BaseModel):
    """Result of a route mutation: the stored entity plus an optional sync warning."""

    route: Route | None = None
    message: str | None = None
    warning: str | None = None


class RoutesListResponse(BaseModel):
    routes: list[Route]
