"""Transactional access to the tenantctl catalog.

The catalog is the single source of truth for templates, instances and the
port pool. Nothing is cached between calls: every helper opens its own
session, and multi-row writes that must be atomic share one transaction.
Rows are returned as plain dictionaries so callers never hold live ORM
objects beyond the session that loaded them.
"""
from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import create_engine, select, update
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..config import AppConfig
from ..errors import NotFound, PersistenceFailure, TenantctlError
from .models import (
    INSTANCE_STATUSES,
    STATUS_DELETED,
    Base,
    Instance,
    PortAssignment,
    ServiceTemplate,
)

LOGGER = logging.getLogger(__name__)


class Catalog:
    """Persistence handle passed to the orchestrator and the port allocator."""

    def __init__(self, url: str, *, echo: bool = False) -> None:
        self.url = url
        self.engine: Engine = _build_engine(url, echo=echo)
        self._sessions = sessionmaker(
            bind=self.engine,
            autoflush=False,
            expire_on_commit=False,
        )

    @classmethod
    def from_config(cls, config: AppConfig) -> Catalog:
        """Return a catalog bound to the configured database URL."""
        return cls(config.database.url, echo=config.database.echo)

    # ------------------------------------------------------------------
    @contextmanager
    def session(self) -> Iterator[Session]:
        """Yield a session that commits on success and rolls back on error."""
        session = self._sessions()
        try:
            yield session
            session.commit()
        except TenantctlError:
            session.rollback()
            raise
        except SQLAlchemyError as exc:
            session.rollback()
            raise PersistenceFailure(f"Catalog operation failed: {exc}") from exc
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    def create_schema(self) -> None:
        """Create any missing catalog tables."""
        _ensure_sqlite_parent(self.url)
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise PersistenceFailure(f"Failed to create catalog schema: {exc}") from exc

    def dispose(self) -> None:
        """Release pooled connections."""
        self.engine.dispose()

    # Port pool --------------------------------------------------------
    def seed_ports(self, start: int, end: int) -> int:
        """Insert pool rows for ``start..end``; existing rows are left untouched."""
        with self.session() as session:
            existing = set(
                session.scalars(
                    select(PortAssignment.port).where(
                        PortAssignment.port >= start,
                        PortAssignment.port <= end,
                    )
                )
            )
            missing = [port for port in range(start, end + 1) if port not in existing]
            session.add_all(PortAssignment(port=port, is_available=True) for port in missing)
        if missing:
            LOGGER.info("Seeded %d ports (%d-%d) into the pool", len(missing), start, end)
        return len(missing)

    def list_ports(self, *, available: bool | None = None) -> list[dict[str, object]]:
        """Return pool entries ordered by port."""
        with self.session() as session:
            query = select(PortAssignment).order_by(PortAssignment.port)
            if available is not None:
                query = query.where(PortAssignment.is_available.is_(available))
            return [row.to_dict() for row in session.scalars(query)]

    # Templates --------------------------------------------------------
    def upsert_template(
        self,
        name: str,
        *,
        description: str | None = None,
        version: str | None = None,
        default_port: int | None = None,
        default_cpu: str = "1",
        default_memory: str = "512M",
    ) -> dict[str, object]:
        """Register or update the service template *name*."""
        with self.session() as session:
            row = session.scalars(
                select(ServiceTemplate).where(ServiceTemplate.name == name)
            ).first()
            if row is None:
                row = ServiceTemplate(name=name)
                session.add(row)
            row.description = description
            row.version = version
            row.default_port = default_port
            row.default_cpu = default_cpu
            row.default_memory = default_memory
            session.flush()
            return row.to_dict()

    def get_template(self, name: str) -> dict[str, object] | None:
        """Return the template registered as *name*, if any."""
        with self.session() as session:
            row = session.scalars(
                select(ServiceTemplate).where(ServiceTemplate.name == name)
            ).first()
            return row.to_dict() if row is not None else None

    def list_templates(self) -> list[dict[str, object]]:
        """Return every registered template ordered by name."""
        with self.session() as session:
            rows = session.scalars(select(ServiceTemplate).order_by(ServiceTemplate.name))
            return [row.to_dict() for row in rows]

    # Instances --------------------------------------------------------
    def find_active_instance(self, identifier: str) -> dict[str, object] | None:
        """Return the non-deleted instance with *identifier*, if any."""
        with self.session() as session:
            row = _active_instance(session, identifier)
            return row.to_dict() if row is not None else None

    def list_instances(
        self,
        *,
        instance_name: str | None = None,
        service_name: str | None = None,
        status: str | None = None,
    ) -> list[dict[str, object]]:
        """Return non-deleted instances matching the filters, newest first."""
        with self.session() as session:
            query = select(Instance).where(Instance.status != STATUS_DELETED)
            if instance_name:
                query = query.where(Instance.instance_name == instance_name)
            if service_name:
                query = query.where(Instance.service_name == service_name)
            if status:
                query = query.where(Instance.status == status)
            query = query.order_by(Instance.created_at.desc(), Instance.id.desc())
            return [row.to_dict() for row in session.scalars(query)]

    def record_instance(
        self,
        *,
        identifier: str,
        instance_name: str,
        service_name: str,
        subdomain: str,
        port: int,
        status: str,
        container_id: str | None,
        cpu_limit: str | None,
        memory_limit: str | None,
        data_path: str | None,
        proxy_site_id: str | None,
    ) -> dict[str, object]:
        """Insert the instance row and bind its port owner in one transaction."""
        _check_status(status)
        with self.session() as session:
            row = Instance(
                identifier=identifier,
                instance_name=instance_name,
                service_name=service_name,
                subdomain=subdomain,
                port=port,
                status=status,
                container_id=container_id,
                cpu_limit=cpu_limit,
                memory_limit=memory_limit,
                data_path=data_path,
                proxy_site_id=proxy_site_id,
            )
            session.add(row)
            session.flush()
            session.execute(
                update(PortAssignment)
                .where(PortAssignment.port == port)
                .values(is_available=False, instance_id=row.id)
            )
            return row.to_dict()

    def set_status(self, identifier: str, status: str) -> dict[str, object]:
        """Update the lifecycle status of the live instance *identifier*."""
        _check_status(status)
        with self.session() as session:
            row = _active_instance(session, identifier)
            if row is None:
                raise NotFound(f"Instance '{identifier}' not found.")
            row.status = status
            session.flush()
            return row.to_dict()

    def retire_instance(self, identifier: str) -> dict[str, object]:
        """Release the instance's port and mark it deleted in one transaction."""
        with self.session() as session:
            row = _active_instance(session, identifier)
            if row is None:
                raise NotFound(f"Instance '{identifier}' not found.")
            session.execute(
                update(PortAssignment)
                .where(PortAssignment.instance_id == row.id)
                .values(is_available=True, instance_id=None)
            )
            session.execute(
                update(PortAssignment)
                .where(PortAssignment.port == row.port)
                .values(is_available=True, instance_id=None)
            )
            row.status = STATUS_DELETED
            session.flush()
            return row.to_dict()


def _active_instance(session: Session, identifier: str) -> Instance | None:
    return session.scalars(
        select(Instance).where(
            Instance.identifier == identifier,
            Instance.status != STATUS_DELETED,
        )
    ).first()


def _check_status(status: str) -> None:
    if status not in INSTANCE_STATUSES:
        allowed = ", ".join(INSTANCE_STATUSES)
        raise ValueError(f"Unknown instance status '{status}'. Allowed: {allowed}.")


def _build_engine(url: str, *, echo: bool) -> Engine:
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite":
        return create_engine(url, echo=echo, pool_pre_ping=True)
    connect_args = {"check_same_thread": False, "timeout": 30}
    if parsed.database in (None, "", ":memory:"):
        return create_engine(url, echo=echo, connect_args=connect_args, poolclass=StaticPool)
    return create_engine(url, echo=echo, connect_args=connect_args)


def _ensure_sqlite_parent(url: str) -> None:
    parsed = make_url(url)
    if parsed.get_backend_name() != "sqlite" or parsed.database in (None, "", ":memory:"):
        return
    Path(parsed.database).expanduser().parent.mkdir(parents=True, exist_ok=True)


__all__ = ["Catalog"]
