"""Lifecycle orchestration for tenant instances.

The orchestrator sequences the port allocator, the runtime driver, the proxy
control client and catalog writes into the high-level operations exposed by
the CLI. Provisioning runs as a saga: allocate a port, provision the runtime,
create the proxy site. A failure at any of those steps unwinds the earlier
ones in reverse order. The catalog row is written only after all three
succeed.

When that final write fails the runtime deployment and proxy site already
exist with no catalog record. Nothing is rolled back automatically; the case
is logged at CRITICAL with the ``reconcile-required`` marker and surfaced as
:class:`PersistenceFailure`.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping
from typing import Protocol, cast

from .catalog import STATUS_RUNNING, STATUS_STOPPED, Catalog
from .errors import (
    AlreadyExists,
    CleanupReport,
    InvalidInput,
    NotFound,
    PersistenceFailure,
    ProxyFailure,
    RedeployFailure,
    RuntimeFailure,
    TenantctlError,
)
from .ports import PortAllocator
from .providers.runtime import ResourceLimits, RuntimeHandle, make_identifier
from .saga import Saga, SagaState, SagaStep

LOGGER = logging.getLogger(__name__)

RECONCILE_MARKER = "reconcile-required"
_SAFE_NAME = re.compile(r"^[A-Za-z0-9-]+$")
_MAX_NAME_LENGTH = 64

# Live runtime states that map onto a catalog status.
_LIVE_TO_CATALOG = {
    "running": STATUS_RUNNING,
    "restarting": STATUS_RUNNING,
    "created": STATUS_STOPPED,
    "exited": STATUS_STOPPED,
    "dead": STATUS_STOPPED,
}

StepCallback = Callable[[str, str, str | None], None]


class Runtime(Protocol):
    """Runtime driver operations used by the orchestrator."""

    def provision(
        self,
        instance_name: str,
        template_name: str,
        subdomain: str,
        port: int,
        resources: ResourceLimits | None = None,
    ) -> RuntimeHandle: ...

    def start(self, identifier: str) -> dict[str, object]: ...

    def stop(self, identifier: str) -> dict[str, object]: ...

    def restart(self, identifier: str) -> dict[str, object]: ...

    def redeploy(self, identifier: str) -> dict[str, object]: ...

    def delete(self, identifier: str) -> dict[str, object]: ...

    def status(self, identifier: str) -> dict[str, object]: ...

    def logs(self, identifier: str, lines: int = 100) -> str: ...

    def backup(self, identifier: str) -> dict[str, object]: ...


class Proxy(Protocol):
    """Proxy control operations used by the orchestrator."""

    def domain_for(self, subdomain: str) -> str: ...

    def create_site(self, subdomain: str, port: int) -> dict[str, object]: ...

    def delete_site(self, domain: str) -> dict[str, object]: ...


def validate_name(value: str, label: str) -> str:
    """Return *value* stripped, or raise :class:`InvalidInput`."""
    text = (value or "").strip()
    if not text:
        raise InvalidInput(f"{label} is required.")
    if len(text) > _MAX_NAME_LENGTH:
        raise InvalidInput(f"{label} must be at most {_MAX_NAME_LENGTH} characters.")
    if not _SAFE_NAME.match(text):
        raise InvalidInput(f"{label} must contain only letters, numbers, and dashes.")
    return text


class LifecycleOrchestrator:
    """Provision, operate and tear down tenant instances."""

    def __init__(
        self,
        catalog: Catalog,
        ports: PortAllocator,
        runtime: Runtime,
        proxy: Proxy,
        *,
        base_domain: str,
        on_step: StepCallback | None = None,
    ) -> None:
        self.catalog = catalog
        self.ports = ports
        self.runtime = runtime
        self.proxy = proxy
        self.base_domain = base_domain
        self.on_step = on_step

    # Provisioning ----------------------------------------------------
    def create_instance(
        self,
        instance_name: str,
        template_name: str,
        resources: Mapping[str, object] | ResourceLimits | None = None,
    ) -> dict[str, object]:
        """Provision a new instance and return its public description."""
        instance_name = validate_name(instance_name, "Instance name")
        template_name = validate_name(template_name, "Template name")

        template = self.catalog.get_template(template_name)
        if template is None:
            raise NotFound(f"Service template '{template_name}' not found.")

        identifier = make_identifier(instance_name, template_name)
        if self.catalog.find_active_instance(identifier) is not None:
            raise AlreadyExists(f"Instance '{identifier}' already exists.")

        limits = _resolve_limits(resources, template)
        subdomain = identifier
        self._step("validate", "ok", identifier)

        saga = Saga(
            [
                SagaStep(
                    "ports.allocate",
                    action=lambda state: self.ports.allocate(),
                    compensation=lambda state: self.ports.release(_port(state)),
                ),
                SagaStep(
                    "runtime.provision",
                    action=lambda state: self.runtime.provision(
                        instance_name, template_name, subdomain, _port(state), limits
                    ),
                    compensation=lambda state: self.runtime.delete(identifier),
                ),
                SagaStep(
                    "proxy.create_site",
                    action=lambda state: self.proxy.create_site(subdomain, _port(state)),
                ),
            ],
            on_step=self.on_step,
        )
        outcome = saga.execute()
        if not outcome.succeeded:
            error = outcome.error
            if outcome.failed_step == "proxy.create_site":
                raise ProxyFailure(
                    f"Proxy site creation for '{identifier}' failed; deployment rolled back: "
                    f"{error}",
                    secondary_errors=outcome.cleanup_errors,
                ) from error
            if isinstance(error, TenantctlError):
                error.add_secondary(outcome.cleanup_errors)
                raise error
            raise RuntimeFailure(
                f"Provisioning '{identifier}' failed at {outcome.failed_step}: {error}",
                secondary_errors=outcome.cleanup_errors,
            ) from error

        port = _port(outcome.state)
        handle = cast(RuntimeHandle, outcome.state["runtime.provision"])
        site = dict(cast(Mapping[str, object], outcome.state["proxy.create_site"]))
        site_id = site.get("site_id")

        try:
            record = self.catalog.record_instance(
                identifier=identifier,
                instance_name=instance_name,
                service_name=template_name,
                subdomain=subdomain,
                port=port,
                status=STATUS_RUNNING,
                container_id=handle.container_id,
                cpu_limit=limits.cpu,
                memory_limit=limits.memory,
                data_path=str(handle.data_path),
                proxy_site_id=str(site_id) if site_id is not None else None,
            )
        except TenantctlError as exc:
            LOGGER.critical(
                "%s: instance %s is deployed (port %s, data %s, proxy site %s) "
                "but has no catalog record: %s",
                RECONCILE_MARKER,
                identifier,
                port,
                handle.data_path,
                site_id,
                exc,
            )
            self._step("catalog.record", "failed", RECONCILE_MARKER)
            raise PersistenceFailure(
                f"Instance '{identifier}' was deployed but could not be recorded "
                f"({RECONCILE_MARKER}): {exc}"
            ) from exc
        self._step("catalog.record", "ok", None)

        warnings = list(handle.warnings)
        if site.get("ssl") is None:
            warnings.append(f"TLS certificate for {site.get('domain')} was not issued.")
        LOGGER.info("Instance %s created on port %d", identifier, port)
        return {
            "identifier": identifier,
            "instance_name": instance_name,
            "service_name": template_name,
            "subdomain": subdomain,
            "port": port,
            "url": f"https://{subdomain}.{self.base_domain}",
            "status": record["status"],
            "container_id": handle.container_id,
            "data_path": str(handle.data_path),
            "resources": limits.to_dict(),
            "proxy": site,
            "warnings": warnings,
        }

    # Lifecycle -------------------------------------------------------
    def stop(self, identifier: str) -> dict[str, object]:
        """Stop the instance and record it as stopped."""
        self._require(identifier)
        self.runtime.stop(identifier)
        return self.catalog.set_status(identifier, STATUS_STOPPED)

    def start(self, identifier: str) -> dict[str, object]:
        """Start the instance and record it as running."""
        self._require(identifier)
        self.runtime.start(identifier)
        return self.catalog.set_status(identifier, STATUS_RUNNING)

    def restart(self, identifier: str) -> dict[str, object]:
        """Restart the instance and record it as running."""
        self._require(identifier)
        self.runtime.restart(identifier)
        return self.catalog.set_status(identifier, STATUS_RUNNING)

    def redeploy(self, identifier: str) -> dict[str, object]:
        """Recreate the deployment from its descriptor.

        When the deployment is torn down but fails to come back up the
        catalog is updated to ``stopped`` before the error propagates.
        """
        self._require(identifier)
        try:
            self.runtime.redeploy(identifier)
        except RedeployFailure as exc:
            if exc.left_stopped:
                report = CleanupReport()
                report.attempt(
                    "record-stopped",
                    lambda: self.catalog.set_status(identifier, STATUS_STOPPED),
                )
                exc.add_secondary(report.errors)
            raise
        return self.catalog.set_status(identifier, STATUS_RUNNING)

    def backup(self, identifier: str) -> dict[str, object]:
        """Archive the instance data directory."""
        self._require(identifier)
        result = self.runtime.backup(identifier)
        return {"identifier": identifier, **result}

    def status(self, identifier: str) -> dict[str, object]:
        """Return live runtime state and sync it into the catalog."""
        record = self._require(identifier)
        live = self.runtime.status(identifier)
        catalog_status = record["status"]
        mapped = _LIVE_TO_CATALOG.get(str(live.get("status")))
        if mapped is not None and mapped != catalog_status:
            LOGGER.info("Instance %s status drifted: %s -> %s", identifier, catalog_status, mapped)
            catalog_status = self.catalog.set_status(identifier, mapped)["status"]
        elif mapped is None:
            LOGGER.warning("Instance %s has runtime state %s", identifier, live.get("status"))
        return {"identifier": identifier, "catalog_status": catalog_status, **live}

    def logs(self, identifier: str, lines: int = 100) -> str:
        """Return the tail of the instance's combined output."""
        self._require(identifier)
        return self.runtime.logs(identifier, lines)

    def delete(self, identifier: str) -> dict[str, object]:
        """Remove the deployment, its proxy site and its port, then mark it deleted.

        Proxy failures are logged and reported but do not stop the delete.
        """
        record = self._require(identifier)
        self.runtime.delete(identifier)
        self._step("runtime.delete", "ok", None)

        domain = self.proxy.domain_for(str(record["subdomain"]))
        try:
            proxy_result = self.proxy.delete_site(domain)
            self._step("proxy.delete_site", "ok", str(proxy_result.get("status")))
        except TenantctlError as exc:
            LOGGER.warning("Proxy site %s could not be deleted: %s", domain, exc)
            self._step("proxy.delete_site", "failed", str(exc))
            proxy_result = {"domain": domain, "status": "error", "error": str(exc)}

        retired = self.catalog.retire_instance(identifier)
        self._step("catalog.retire", "ok", None)
        LOGGER.info("Instance %s deleted; port %s released", identifier, retired["port"])
        return {
            "identifier": identifier,
            "status": retired["status"],
            "port_released": retired["port"],
            "proxy": proxy_result,
        }

    # Queries ---------------------------------------------------------
    def get_instance(self, identifier: str) -> dict[str, object]:
        """Return the catalog record for a live instance."""
        return self._require(identifier)

    def list_instances(
        self,
        *,
        instance_name: str | None = None,
        service_name: str | None = None,
        status: str | None = None,
    ) -> list[dict[str, object]]:
        """Return live instances, newest first."""
        return self.catalog.list_instances(
            instance_name=instance_name,
            service_name=service_name,
            status=status,
        )

    def list_services(self) -> list[dict[str, object]]:
        """Return registered service templates."""
        return self.catalog.list_templates()

    # ------------------------------------------------------------------
    def _require(self, identifier: str) -> dict[str, object]:
        record = self.catalog.find_active_instance(identifier)
        if record is None:
            raise NotFound(f"Instance '{identifier}' not found.")
        return record

    def _step(self, name: str, status: str, detail: str | None) -> None:
        if self.on_step is not None:
            self.on_step(name, status, detail)


def _port(state: SagaState) -> int:
    return cast(int, state["ports.allocate"])


def _resolve_limits(
    resources: Mapping[str, object] | ResourceLimits | None,
    template: Mapping[str, object],
) -> ResourceLimits:
    if isinstance(resources, ResourceLimits):
        requested: Mapping[str, object] = resources.to_dict()
    else:
        requested = resources or {}
    unknown = set(requested) - {"cpu", "memory"}
    if unknown:
        raise InvalidInput(f"Unknown resource keys: {', '.join(sorted(unknown))}.")
    cpu = requested.get("cpu") or template.get("default_cpu")
    memory = requested.get("memory") or template.get("default_memory")
    return ResourceLimits(
        cpu=str(cpu) if cpu else None,
        memory=str(memory) if memory else None,
    )


__all__ = ["LifecycleOrchestrator", "RECONCILE_MARKER", "validate_name"]
