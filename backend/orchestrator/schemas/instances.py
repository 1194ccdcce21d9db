from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel


class InstanceStatus(str, Enum):
    UNKNOWN = "unknown"
    ONLINE = "online"
    OFFLINE = "offline"
    ERROR = "error"


class Instance(BaseModel):
    id: str
    name: str
    admin_url: str
    status: InstanceStatus = InstanceStatus.UNKNOWN
    last_seen: datetime | None = None
    created_at: datetime
    updated_at: datetime


class InstanceCreate(BaseModel):
    id: str | None = None
    name: str
    admin_url: str


class InstanceUpdate(BaseModel):
    name: str | None = None
    admin_url: str | None = None


class InstanceHealth(BaseModel):
    """Last observed health of an instance. Replaced as a whole, never mutated."""

    instance_id: str
    status: InstanceStatus = InstanceStatus.UNKNOWN
    latency_ms: float | None = None
    error: str | None = None
    checked_at: datetime | None = None


class InstancesListResponse(BaseModel):
    instances: list[Instance]


class InstanceStatusResponse(BaseModel):
    instance_id: str
    status: InstanceStatus
    admin_url: str
    latency_ms: float | None = None
    error: str | None = None
    checked_at: datetime | None = None
    route_count: int = 0
    pending_resync: bool = False


class ConnectionTestRequest(BaseModel):
    url: str


class ConnectionTestResponse(BaseModel):
    success: bool
    latency_ms: float
    error: str | None = None
