"""SQLAlchemy models for the tenantctl catalog."""
from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

STATUS_RUNNING = "running"
STATUS_STOPPED = "stopped"
STATUS_DELETED = "deleted"
INSTANCE_STATUSES = (STATUS_RUNNING, STATUS_STOPPED, STATUS_DELETED)


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class ServiceTemplate(Base):
    """A deployable service registered from a template directory."""

    __tablename__ = "services"

    id = Column(Integer, primary_key=True)
    name = Column(String(50), unique=True, index=True, nullable=False)
    description = Column(Text, nullable=True)
    version = Column(String(32), nullable=True)
    default_port = Column(Integer, nullable=True)
    default_cpu = Column(String(10), nullable=False, default="1")
    default_memory = Column(String(20), nullable=False, default="512M")
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "default_port": self.default_port,
            "default_cpu": self.default_cpu,
            "default_memory": self.default_memory,
        }


# Identifier, subdomain and port are unique among live rows only; soft-deleted
# rows keep their values for auditing without blocking reuse.
_LIVE = text("status != 'deleted'")


class Instance(Base):
    """One provisioned tenant instance."""

    __tablename__ = "instances"
    __table_args__ = (
        Index(
            "uq_instances_live_identifier",
            "identifier",
            unique=True,
            sqlite_where=_LIVE,
            postgresql_where=_LIVE,
        ),
        Index(
            "uq_instances_live_subdomain",
            "subdomain",
            unique=True,
            sqlite_where=_LIVE,
            postgresql_where=_LIVE,
        ),
        Index(
            "uq_instances_live_port",
            "port",
            unique=True,
            sqlite_where=_LIVE,
            postgresql_where=_LIVE,
        ),
    )

    id = Column(Integer, primary_key=True)
    container_id = Column(String(100), nullable=True)
    identifier = Column(String(150), index=True, nullable=False)
    instance_name = Column(String(100), index=True, nullable=False)
    service_name = Column(String(50), ForeignKey("services.name"), index=True, nullable=False)
    subdomain = Column(String(150), nullable=False)
    port = Column(Integer, nullable=False)
    status = Column(String(16), index=True, nullable=False, default=STATUS_RUNNING)
    cpu_limit = Column(String(10), nullable=True)
    memory_limit = Column(String(20), nullable=True)
    data_path = Column(String(255), nullable=True)
    proxy_site_id = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "id": self.id,
            "container_id": self.container_id,
            "identifier": self.identifier,
            "instance_name": self.instance_name,
            "service_name": self.service_name,
            "subdomain": self.subdomain,
            "port": self.port,
            "status": self.status,
            "cpu_limit": self.cpu_limit,
            "memory_limit": self.memory_limit,
            "data_path": self.data_path,
            "proxy_site_id": self.proxy_site_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class PortAssignment(Base):
    """One port of the pool and its current owner."""

    __tablename__ = "port_pool"

    port = Column(Integer, primary_key=True, autoincrement=False)
    is_available = Column(Boolean, nullable=False, default=True, index=True)
    instance_id = Column(Integer, ForeignKey("instances.id", ondelete="SET NULL"), nullable=True)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "port": self.port,
            "available": bool(self.is_available),
            "instance_id": self.instance_id,
        }


__all__ = [
    "Base",
    "INSTANCE_STATUSES",
    "Instance",
    "PortAssignment",
    "STATUS_DELETED",
    "STATUS_RUNNING",
    "STATUS_STOPPED",
    "ServiceTemplate",
]
