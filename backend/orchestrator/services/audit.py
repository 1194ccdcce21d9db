from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any

from sqlalchemy import desc
from sqlalchemy.orm import Session

from orchestrator.config import Settings
from orchestrator.database import AuditLog, Database, as_utc, get_database, utcnow
from orchestrator.schemas.audit import (
    ActionStatus,
    AuditLogEntry,
    AuditLogFilter,
    AuditLogResponse,
)


logger = logging.getLogger(__name__)


class AuditService:
    """Service for managing audit logs."""

    def __init__(self, settings: Settings, db: Database | None = None):
        self.settings = settings
        self.db = db or get_database(settings.sqlite_db_path)

    def _get_session(self) -> Session:
        return self.db.get_session()

    def _truncate(self, value: str | None) -> str | None:
        if value and len(value) > self.settings.audit_max_output_length:
            return value[: self.settings.audit_max_output_length] + "... [truncated]"
        return value

    @staticmethod
    def _to_entry(log: AuditLog) -> AuditLogEntry:
        return AuditLogEntry(
            id=log.id,
            timestamp=as_utc(log.timestamp),
            action_type=log.action_type,
            target_type=log.target_type,
            target_name=log.target_name,
            status=log.status,
            user_email=log.user_email,
            output=log.output,
            error_message=log.error_message,
            metadata=log.get_metadata(),
            duration_ms=log.duration_ms,
        )

    def log_action(
        self,
        action_type: str,
        target_type: str,
        target_name: str,
        status: str = ActionStatus.SUCCESS,
        user_email: str | None = None,
        output: str | None = None,
        error_message: str | None = None,
        metadata: dict[str, Any] | None = None,
        duration_ms: float | None = None,
    ) -> AuditLogEntry:
        """Log an action to the audit log with structured logging.

        Args:
            action_type: Type of action (e.g., route_create, config_sync)
            target_type: Type of target (route, instance, config)
            target_name: Name of the target (route domain, instance id)
            status: Action status (success, warning, failure)
            user_email: Email of user who triggered the action
            output: Human-readable summary
            error_message: Error or warning message
            metadata: Additional metadata dict (history id, skipped routes)
            duration_ms: Action duration in milliseconds
        """
        action_type = getattr(action_type, "value", action_type)
        target_type = getattr(target_type, "value", target_type)
        status = getattr(status, "value", status)

        session = self._get_session()
        try:
            log_entry = AuditLog(
                timestamp=utcnow(),
                action_type=action_type,
                target_type=target_type,
                target_name=target_name,
                status=status,
                user_email=user_email,
                output=self._truncate(output),
                error_message=self._truncate(error_message),
                duration_ms=duration_ms,
            )
            if metadata:
                log_entry.set_metadata(metadata)

            session.add(log_entry)
            session.commit()
            session.refresh(log_entry)

            # Emit structured log for monitoring/alerting
            log_data = {
                "action": action_type,
                "target_type": target_type,
                "target": target_name,
                "status": status,
                "duration_ms": round(duration_ms, 2) if duration_ms else None,
                "user": user_email,
            }
            if error_message:
                log_data["error"] = error_message[:200] if len(error_message) > 200 else error_message

            if status == ActionStatus.SUCCESS.value:
                logger.info(
                    f"Action completed: {action_type} on {target_type}/{target_name}",
                    extra=log_data,
                )
            else:
                logger.warning(
                    f"Action {status}: {action_type} on {target_type}/{target_name}",
                    extra=log_data,
                )

            return self._to_entry(log_entry)
        finally:
            session.close()

    async def log_action_async(self, **kwargs: Any) -> AuditLogEntry:
        return await asyncio.to_thread(self.log_action, **kwargs)

    def get_logs(
        self,
        filters: AuditLogFilter | None = None,
        page: int = 1,
        page_size: int = 50,
    ) -> AuditLogResponse:
        """Query audit logs with optional filters and pagination."""
        session = self._get_session()
        try:
            query = session.query(AuditLog)

            if filters:
                if filters.action_type:
                    query = query.filter(AuditLog.action_type == filters.action_type)
                if filters.target_type:
                    query = query.filter(AuditLog.target_type == filters.target_type)
                if filters.target_name:
                    query = query.filter(AuditLog.target_name.ilike(f"%{filters.target_name}%"))
                if filters.status:
                    query = query.filter(AuditLog.status == filters.status)
                if filters.start_date:
                    query = query.filter(AuditLog.timestamp >= filters.start_date)
                if filters.end_date:
                    query = query.filter(AuditLog.timestamp <= filters.end_date)

            total = query.count()
            total_pages = (total + page_size - 1) // page_size

            offset = (page - 1) * page_size
            logs = query.order_by(desc(AuditLog.timestamp)).offset(offset).limit(page_size).all()

            return AuditLogResponse(
                logs=[self._to_entry(log) for log in logs],
                total=total,
                page=page,
                page_size=page_size,
                total_pages=total_pages,
            )
        finally:
            session.close()

    def cleanup_old_logs(self) -> int:
        """Delete logs older than the retention period."""
        session = self._get_session()
        try:
            cutoff = utcnow() - timedelta(days=self.settings.audit_retention_days)
            deleted = session.query(AuditLog).filter(AuditLog.timestamp < cutoff).delete()
            session.commit()
            logger.info("Cleaned up %d old audit logs", deleted)
            return deleted
        finally:
            session.close()
