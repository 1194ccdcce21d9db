from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Boolean, Column, DateTime, Float, Integer, String, Text, create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker


Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything we write is UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class RouteRecord(Base):
    """SQLAlchemy model for a declared route."""

    __tablename__ = "routes"

    id = Column(String(36), primary_key=True)
    instance_id = Column(String(64), nullable=False, index=True)
    domain = Column(String(255), nullable=False, index=True)
    path = Column(String(1024), nullable=False, default="")
    strip_prefix = Column(String(1024), nullable=False, default="")
    handler_type = Column(String(50), nullable=False)
    config_json = Column(Text, nullable=False, default="{}")
    headers_json = Column(Text, nullable=True)
    enabled = Column(Boolean, nullable=False, default=True, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)

    def set_config(self, data: dict[str, Any]) -> None:
        self.config_json = json.dumps(data, sort_keys=True)

    def get_config(self) -> dict[str, Any]:
        if not self.config_json:
            return {}
        return json.loads(self.config_json)

    def set_headers(self, data: dict[str, Any] | None) -> None:
        self.headers_json = json.dumps(data, sort_keys=True) if data else None

    def get_headers(self) -> dict[str, Any] | None:
        if not self.headers_json:
            return None
        return json.loads(self.headers_json)


class GlobalConfigRecord(Base):
    """Per-instance global settings."""

    __tablename__ = "global_config"

    instance_id = Column(String(64), primary_key=True)
    caddy_admin_url = Column(String(1024), nullable=False, default="")
    enable_encode = Column(Boolean, nullable=False, default=False)


class InstanceRecord(Base):
    """A managed Caddy server."""

    __tablename__ = "instances"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    admin_url = Column(String(1024), nullable=False)
    status = Column(String(20), nullable=False, default="unknown")
    last_seen = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, nullable=False)


class EditHistoryRecord(Base):
    """Append-only snapshot pair recorded for every attempted apply."""

    __tablename__ = "edit_history"

    id = Column(String(36), primary_key=True)
    timestamp = Column(DateTime, default=utcnow, nullable=False, index=True)
    instance_id = Column(String(64), nullable=False, index=True)
    old_config = Column(Text, nullable=False, default="")
    new_config = Column(Text, nullable=False, default="")
    edited_by = Column(String(255), nullable=False)


class AuditLog(Base):
    """SQLAlchemy model for audit log entries."""

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime, default=utcnow, nullable=False, index=True)
    action_type = Column(String(50), nullable=False, index=True)
    target_type = Column(String(50), nullable=False, index=True)
    target_name = Column(String(255), nullable=False, index=True)
    status = Column(String(20), nullable=False, index=True)
    user_email = Column(String(255), nullable=True)
    output = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    metadata_json = Column(Text, nullable=True)
    duration_ms = Column(Float, nullable=True)

    def set_metadata(self, data: dict[str, Any]) -> None:
        self.metadata_json = json.dumps(data, default=str) if data else None

    def get_metadata(self) -> dict[str, Any]:
        if not self.metadata_json:
            return {}
        return json.loads(self.metadata_json)


class Database:
    """Database connection manager."""

    def __init__(self, db_path: str = "orchestrator.db"):
        self.db_path = db_path
        self.engine = create_engine(
            f"sqlite:///{db_path}",
            connect_args={"check_same_thread": False},
            echo=False,
        )
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    def init_db(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        return self.SessionLocal()

    def dispose(self) -> None:
        self.engine.dispose()


_database: Database | None = None


def get_database(db_path: str = "orchestrator.db") -> Database:
    global _database
    if _database is None:
        _database = Database(db_path)
    return _database


def init_database(db_path: str = "orchestrator.db") -> Database:
    db = get_database(db_path)
    db.init_db()
    return db
