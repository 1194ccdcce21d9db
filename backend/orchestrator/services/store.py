from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Generator

from sqlalchemy import desc, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from orchestrator.database import (
    Database,
    EditHistoryRecord,
    GlobalConfigRecord,
    InstanceRecord,
    RouteRecord,
    as_utc,
    utcnow,
)
from orchestrator.schemas.history import EditHistoryEntry
from orchestrator.schemas.instances import Instance, InstanceCreate, InstanceStatus, InstanceUpdate
from orchestrator.schemas.routes import (
    HeaderConfig,
    Route,
    RouteBase,
    RouteCreate,
    RouteUpdate,
    dump_handler_config,
)
from orchestrator.schemas.settings import GlobalConfig


logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Raised when the persistence layer fails. The operation had no effect."""
    pass


class NotFoundError(StoreError):
    """Raised when a requested entity does not exist."""

    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} '{key}' not found")


class AlreadyExistsError(StoreError):
    """Raised when creating an entity whose id is taken."""

    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} '{key}' already exists")


class DomainStore:
    """CRUD over routes, instances, global config and edit history.

    Every public method runs in its own session and either commits as a
    whole or raises StoreError with nothing written.
    """

    def __init__(self, db: Database):
        self.db = db

    @contextmanager
    def _session(self) -> Generator[Session, None, None]:
        session = self.db.get_session()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("Store operation failed: %s", exc)
            raise StoreError(str(exc)) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Routes ---------------------------------------------------------------

    @staticmethod
    def _to_route(record: RouteRecord) -> Route:
        return Route(
            id=record.id,
            instance_id=record.instance_id,
            domain=record.domain,
            path=record.path or "",
            strip_prefix=record.strip_prefix or "",
            handler_type=record.handler_type,
            config=record.get_config(),
            headers=record.get_headers(),
            enabled=bool(record.enabled),
            created_at=as_utc(record.created_at),
            updated_at=as_utc(record.updated_at),
        )

    @staticmethod
    def _apply_route_fields(record: RouteRecord, data: RouteBase) -> None:
        record.domain = data.domain
        record.path = data.path or ""
        record.strip_prefix = data.strip_prefix or ""
        record.handler_type = data.handler_type
        record.set_config(dump_handler_config(data.config))
        headers: HeaderConfig | None = data.headers
        record.set_headers(headers.model_dump() if headers and not headers.is_empty() else None)

    def _get_route_record(self, session: Session, route_id: str) -> RouteRecord:
        record = session.get(RouteRecord, route_id)
        if record is None:
            raise NotFoundError("Route", route_id)
        return record

    def create_route(self, instance_id: str, data: RouteCreate) -> Route:
        now = utcnow()
        with self._session() as session:
            # Same session as the insert, so a concurrently deleted instance is caught
            self._get_instance_record(session, instance_id)
            record = RouteRecord(
                id=str(uuid.uuid4()),
                instance_id=instance_id,
                enabled=True,
                created_at=now,
                updated_at=now,
            )
            self._apply_route_fields(record, data)
            session.add(record)
            session.flush()
            return self._to_route(record)

    def get_route(self, route_id: str) -> Route:
        with self._session() as session:
            return self._to_route(self._get_route_record(session, route_id))

    def list_routes(self, instance_id: str | None = None) -> list[Route]:
        with self._session() as session:
            query = session.query(RouteRecord)
            if instance_id is not None:
                query = query.filter(RouteRecord.instance_id == instance_id)
            records = query.order_by(RouteRecord.domain, RouteRecord.path).all()
            return [self._to_route(record) for record in records]

    def count_routes(self, instance_id: str) -> int:
        with self._session() as session:
            return (
                session.query(func.count(RouteRecord.id))
                .filter(RouteRecord.instance_id == instance_id)
                .scalar()
            ) or 0

    def update_route(self, route_id: str, data: RouteUpdate) -> Route:
        """Replace a route's editable fields. id, instance and created_at never change."""
        with self._session() as session:
            record = self._get_route_record(session, route_id)
            self._apply_route_fields(record, data)
            if data.enabled is not None:
                record.enabled = data.enabled
            record.updated_at = utcnow()
            session.flush()
            return self._to_route(record)

    def set_route_enabled(self, route_id: str, enabled: bool) -> Route:
        with self._session() as session:
            record = self._get_route_record(session, route_id)
            record.enabled = enabled
            record.updated_at = utcnow()
            session.flush()
            return self._to_route(record)

    def delete_route(self, route_id: str) -> Route:
        with self._session() as session:
            record = self._get_route_record(session, route_id)
            route = self._to_route(record)
            session.delete(record)
            return route

    # Global config --------------------------------------------------------

    def get_global_config(self, instance_id: str) -> GlobalConfig:
        with self._session() as session:
            record = session.get(GlobalConfigRecord, instance_id)
            if record is None:
                return GlobalConfig()
            return GlobalConfig(
                caddy_admin_url=record.caddy_admin_url or "",
                enable_encode=bool(record.enable_encode),
            )

    def set_global_config(self, instance_id: str, config: GlobalConfig) -> GlobalConfig:
        with self._session() as session:
            record = session.get(GlobalConfigRecord, instance_id)
            if record is None:
                record = GlobalConfigRecord(instance_id=instance_id)
                session.add(record)
            record.caddy_admin_url = config.caddy_admin_url or ""
            record.enable_encode = config.enable_encode
            return config.model_copy()

    # Edit history ---------------------------------------------------------

    @staticmethod
    def _to_history(record: EditHistoryRecord) -> EditHistoryEntry:
        return EditHistoryEntry(
            id=record.id,
            timestamp=as_utc(record.timestamp),
            instance_id=record.instance_id,
            old_config=record.old_config or "",
            new_config=record.new_config or "",
            edited_by=record.edited_by,
        )

    def append_history(
        self,
        instance_id: str,
        old_config: str,
        new_config: str,
        edited_by: str,
    ) -> EditHistoryEntry:
        with self._session() as session:
            record = EditHistoryRecord(
                id=str(uuid.uuid4()),
                timestamp=utcnow(),
                instance_id=instance_id,
                old_config=old_config,
                new_config=new_config,
                edited_by=edited_by,
            )
            session.add(record)
            session.flush()
            return self._to_history(record)

    def list_history(self, instance_id: str, limit: int = 50) -> list[EditHistoryEntry]:
        """Newest first."""
        with self._session() as session:
            records = (
                session.query(EditHistoryRecord)
                .filter(EditHistoryRecord.instance_id == instance_id)
                .order_by(desc(EditHistoryRecord.timestamp))
                .limit(limit)
                .all()
            )
            return [self._to_history(record) for record in records]

    def get_history(self, history_id: str) -> EditHistoryEntry:
        with self._session() as session:
            record = session.get(EditHistoryRecord, history_id)
            if record is None:
                raise NotFoundError("History entry", history_id)
            return self._to_history(record)

    def purge_history(self, instance_id: str) -> int:
        with self._session() as session:
            return (
                session.query(EditHistoryRecord)
                .filter(EditHistoryRecord.instance_id == instance_id)
                .delete()
            )

    def cleanup_old_history(self, retention_days: int) -> int:
        """Delete history entries older than the retention period."""
        cutoff = utcnow() - timedelta(days=retention_days)
        with self._session() as session:
            deleted = (
                session.query(EditHistoryRecord)
                .filter(EditHistoryRecord.timestamp < cutoff)
                .delete()
            )
        logger.info("Cleaned up %d old edit history entries", deleted)
        return deleted

    # Instances ------------------------------------------------------------

    @staticmethod
    def _to_instance(record: InstanceRecord) -> Instance:
        return Instance(
            id=record.id,
            name=record.name,
            admin_url=record.admin_url,
            status=InstanceStatus(record.status or InstanceStatus.UNKNOWN.value),
            last_seen=as_utc(record.last_seen),
            created_at=as_utc(record.created_at),
            updated_at=as_utc(record.updated_at),
        )

    def _get_instance_record(self, session: Session, instance_id: str) -> InstanceRecord:
        record = session.get(InstanceRecord, instance_id)
        if record is None:
            raise NotFoundError("Instance", instance_id)
        return record

    def create_instance(self, data: InstanceCreate) -> Instance:
        now = utcnow()
        with self._session() as session:
            instance_id = data.id or str(uuid.uuid4())
            if session.get(InstanceRecord, instance_id) is not None:
                raise AlreadyExistsError("Instance", instance_id)
            record = InstanceRecord(
                id=instance_id,
                name=data.name,
                admin_url=data.admin_url,
                status=InstanceStatus.UNKNOWN.value,
                created_at=now,
                updated_at=now,
            )
            session.add(record)
            session.flush()
            return self._to_instance(record)

    def get_instance(self, instance_id: str) -> Instance:
        with self._session() as session:
            return self._to_instance(self._get_instance_record(session, instance_id))

    def list_instances(self) -> list[Instance]:
        with self._session() as session:
            records = session.query(InstanceRecord).order_by(InstanceRecord.name).all()
            return [self._to_instance(record) for record in records]

    def update_instance(self, instance_id: str, data: InstanceUpdate) -> Instance:
        with self._session() as session:
            record = self._get_instance_record(session, instance_id)
            if data.name is not None:
                record.name = data.name
            if data.admin_url is not None:
                record.admin_url = data.admin_url
            record.updated_at = utcnow()
            session.flush()
            return self._to_instance(record)

    def set_instance_status(
        self,
        instance_id: str,
        status: InstanceStatus,
        last_seen: datetime | None = None,
    ) -> None:
        with self._session() as session:
            record = self._get_instance_record(session, instance_id)
            record.status = status.value
            if last_seen is not None:
                record.last_seen = last_seen

    def delete_instance(self, instance_id: str, purge_history: bool = False) -> Instance:
        """Delete an instance together with its routes and settings."""
        with self._session() as session:
            record = self._get_instance_record(session, instance_id)
            instance = self._to_instance(record)
            session.query(RouteRecord).filter(RouteRecord.instance_id == instance_id).delete()
            session.query(GlobalConfigRecord).filter(
                GlobalConfigRecord.instance_id == instance_id
            ).delete()
            if purge_history:
                session.query(EditHistoryRecord).filter(
                    EditHistoryRecord.instance_id == instance_id
                ).delete()
            session.delete(record)
            return instance
