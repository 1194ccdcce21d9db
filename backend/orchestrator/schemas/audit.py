from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ActionType(str, Enum):
    ROUTE_CREATE = "route_create"
    ROUTE_UPDATE = "route_update"
    ROUTE_DELETE = "route_delete"
    ROUTE_TOGGLE = "route_toggle"
    CONFIG_SYNC = "config_sync"
    CONFIG_ROLLBACK = "config_rollback"
    SETTINGS_UPDATE = "settings_update"
    INSTANCE_CREATE = "instance_create"
    INSTANCE_UPDATE = "instance_update"
    INSTANCE_DELETE = "instance_delete"


class TargetType(str, Enum):
    ROUTE = "route"
    INSTANCE = "instance"
    CONFIG = "config"


class ActionStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    # The store mutation went through but the live instance was not updated
    WARNING = "warning"
    PENDING = "pending"


class AuditLogEntry(BaseModel):
    id: int
    timestamp: datetime
    action_type: str
    target_type: str
    target_name: str
    status: str
    user_email: str | None = None
    output: str | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    duration_ms: float | None = None


class AuditLogFilter(BaseModel):
    action_type: str | None = None
    target_type: str | None = None
    target_name: str | None = None
    status: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None


class AuditLogResponse(BaseModel):
    logs: list[AuditLogEntry]
    total: int
    page: int
    page_size: int
    total_pages: int
