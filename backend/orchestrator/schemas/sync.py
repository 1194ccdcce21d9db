from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class SkippedRoute(BaseModel):
    """A route left out of the built config, with the reason."""

    route_id: str
    domain: str
    reason: str


class SyncResult(BaseModel):
    instance_id: str
    success: bool
    error: str | None = None
    history_id: str | None = None
    route_count: int = 0
    skipped: list[SkippedRoute] = Field(default_factory=list)


class ConfigPreviewResponse(BaseModel):
    instance_id: str
    config: dict[str, Any]
    skipped: list[SkippedRoute] = Field(default_factory=list)
