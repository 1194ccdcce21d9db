from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class EditHistoryEntry(BaseModel):
    """One attempted apply: the live config before it and the config pushed."""

    id: str
    timestamp: datetime
    instance_id: str
    old_config: str
    new_config: str
    edited_by: str


class EditHistoryResponse(BaseModel):
    instance_id: str
    entries: list[EditHistoryEntry]
