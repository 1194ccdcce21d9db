from __future__ import annotations

import asyncio
from datetime import datetime

from fastapi import APIRouter, Depends, Query

from orchestrator.dependencies import get_audit_service
from orchestrator.schemas.audit import AuditLogFilter, AuditLogResponse
from orchestrator.services.audit import AuditService


router = APIRouter(prefix="/api/audit", tags=["audit"])


@router.get("/logs", response_model=AuditLogResponse)
async def get_audit_logs(
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=200, description="Items per page"),
    action_type: str | None = Query(None, description="Filter by action type"),
    target_type: str | None = Query(None, description="Filter by target type"),
    target_name: str | None = Query(None, description="Filter by target name (partial match)"),
    status: str | None = Query(None, description="Filter by status"),
    start_date: datetime | None = Query(None, description="Filter logs after this date"),
    end_date: datetime | None = Query(None, description="Filter logs before this date"),
    service: AuditService = Depends(get_audit_service),
):
    """Get paginated audit logs with optional filters."""
    filters = AuditLogFilter(
        action_type=action_type,
        target_type=target_type,
        target_name=target_name,
        status=status,
        start_date=start_date,
        end_date=end_date,
    )
    return await asyncio.to_thread(service.get_logs, filters, page, page_size)


@router.post("/cleanup")
async def cleanup_old_logs(service: AuditService = Depends(get_audit_service)):
    """Manually trigger cleanup of old audit logs."""
    deleted = await asyncio.to_thread(service.cleanup_old_logs)
    return {"deleted": deleted, "message": f"Deleted {deleted} old audit log entries"}
