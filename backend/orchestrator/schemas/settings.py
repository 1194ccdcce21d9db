from __future__ import annotations

from pydantic import BaseModel


class GlobalConfig(BaseModel):
    """Per-instance settings applied to every route of that instance."""

    caddy_admin_url: str = ""
    enable_encode: bool = False


class GlobalConfigResponse(BaseModel):
    instance_id: str
    config: GlobalConfig
