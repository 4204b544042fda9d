"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest

from tenantctl.catalog import Catalog
from tenantctl.orchestrator import LifecycleOrchestrator
from tenantctl.ports import PortAllocator
from tenantctl.providers.runtime import ResourceLimits, RuntimeHandle, make_identifier

COMPOSE_DESCRIPTOR = """\
services:
  app:
    image: demo/app:1.0
    container_name: ${CONTAINER_NAME}
    ports:
      - "127.0.0.1:${PORT}:8080"
    volumes:
      - ./data:/data
"""

ENV_TEMPLATE = """\
INSTANCE_NAME=${INSTANCE_NAME}
CONTAINER_NAME=${CONTAINER_NAME}
PORT=${PORT}
PUBLIC_URL=https://${SUBDOMAIN}.${BASE_DOMAIN}
"""


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def write_template(
    root: Path,
    name: str,
    *,
    env_template: str = ENV_TEMPLATE,
    metadata: str | None = None,
) -> Path:
    """Create a service template directory under *root*."""
    path = root / name
    path.mkdir(parents=True, exist_ok=True)
    (path / "docker-compose.yaml").write_text(COMPOSE_DESCRIPTOR, encoding="utf-8")
    (path / ".env.template").write_text(env_template, encoding="utf-8")
    if metadata is not None:
        (path / "template.yml").write_text(metadata, encoding="utf-8")
    return path


class FakeRuntime:
    """In-memory stand-in for :class:`~tenantctl.providers.ComposeRuntime`."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.calls: list[tuple[str, str]] = []
        self.deployments: dict[str, dict[str, object]] = {}
        self.live: dict[str, dict[str, object]] = {}
        self.fail_provision: Exception | None = None
        self.fail_delete: Exception | None = None
        self.fail_redeploy: Exception | None = None

    def provision(
        self,
        instance_name: str,
        template_name: str,
        subdomain: str,
        port: int,
        resources: ResourceLimits | None = None,
    ) -> RuntimeHandle:
        identifier = make_identifier(instance_name, template_name)
        self.calls.append(("provision", identifier))
        if self.fail_provision is not None:
            raise self.fail_provision
        self.deployments[identifier] = {"port": port, "subdomain": subdomain, "resources": resources}
        return RuntimeHandle(
            identifier=identifier,
            container_id=f"cid-{identifier}",
            status="running",
            workdir=self.root / identifier,
            data_path=self.root / identifier / "data",
        )

    def start(self, identifier: str) -> dict[str, object]:
        self.calls.append(("start", identifier))
        return {"status": "running"}

    def stop(self, identifier: str) -> dict[str, object]:
        self.calls.append(("stop", identifier))
        return {"status": "stopped"}

    def restart(self, identifier: str) -> dict[str, object]:
        self.calls.append(("restart", identifier))
        return {"status": "running"}

    def redeploy(self, identifier: str) -> dict[str, object]:
        self.calls.append(("redeploy", identifier))
        if self.fail_redeploy is not None:
            raise self.fail_redeploy
        return {"status": "running"}

    def delete(self, identifier: str) -> dict[str, object]:
        self.calls.append(("delete", identifier))
        if self.fail_delete is not None:
            raise self.fail_delete
        self.deployments.pop(identifier, None)
        return {"status": "deleted"}

    def status(self, identifier: str) -> dict[str, object]:
        self.calls.append(("status", identifier))
        return self.live.get(
            identifier,
            {"status": "not_found", "running": False, "started_at": None, "finished_at": None},
        )

    def logs(self, identifier: str, lines: int = 100) -> str:
        self.calls.append(("logs", identifier))
        return f"{identifier}: last {lines} lines\n"

    def backup(self, identifier: str) -> dict[str, object]:
        self.calls.append(("backup", identifier))
        return {
            "backup_file": str(self.root / "backups" / f"{identifier}_stamp.tar.gz"),
            "size": 42,
            "timestamp": "stamp",
        }


class FakeProxy:
    """In-memory stand-in for :class:`~tenantctl.providers.ProxyControlClient`."""

    def __init__(self, base_domain: str = "example.test") -> None:
        self.base_domain = base_domain
        self.sites: dict[str, int] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_create: Exception | None = None
        self.fail_delete: Exception | None = None
        self.issue_certificates = True

    def domain_for(self, subdomain: str) -> str:
        return f"{subdomain}.{self.base_domain}"

    def create_site(self, subdomain: str, port: int) -> dict[str, object]:
        domain = self.domain_for(subdomain)
        self.calls.append(("create_site", domain))
        if self.fail_create is not None:
            raise self.fail_create
        self.sites[domain] = port
        ssl = {"certificate_id": 7, "status": "creating"} if self.issue_certificates else None
        return {
            "site_id": 100 + len(self.sites),
            "domain": domain,
            "status": "created",
            "upstream": f"http://127.0.0.1:{port}",
            "ssl": ssl,
        }

    def delete_site(self, domain: str) -> dict[str, object]:
        self.calls.append(("delete_site", domain))
        if self.fail_delete is not None:
            raise self.fail_delete
        if domain not in self.sites:
            return {"domain": domain, "status": "not_found"}
        del self.sites[domain]
        return {"domain": domain, "status": "deleted"}


@pytest.fixture
def catalog(tmp_path: Path) -> Iterator[Catalog]:
    """Return a file-backed catalog with a two-port pool and the ``demo`` template."""
    store = Catalog(f"sqlite:///{tmp_path / 'catalog.db'}")
    store.create_schema()
    store.seed_ports(14000, 14001)
    store.upsert_template("demo", description="Demo service", version="1.0")
    yield store
    store.dispose()


@pytest.fixture
def templates_dir(tmp_path: Path) -> Path:
    """Return a templates directory holding the ``demo`` template."""
    root = tmp_path / "templates"
    write_template(root, "demo", metadata='description: Demo service\nversion: "1.0"\n')
    return root


@pytest.fixture
def make_template(templates_dir: Path) -> Callable[..., Path]:
    """Return a factory that adds template directories next to ``demo``."""

    def _make(name: str, **kwargs: Any) -> Path:
        return write_template(templates_dir, name, **kwargs)

    return _make


@pytest.fixture
def fake_runtime(tmp_path: Path) -> FakeRuntime:
    """Return an in-memory runtime driver."""
    return FakeRuntime(tmp_path / "instances")


@pytest.fixture
def fake_proxy() -> FakeProxy:
    """Return an in-memory proxy client."""
    return FakeProxy()


@pytest.fixture
def steps() -> list[tuple[str, str, str | None]]:
    """Collect orchestrator step notifications."""
    return []


@pytest.fixture
def orchestrator(
    catalog: Catalog,
    fake_runtime: FakeRuntime,
    fake_proxy: FakeProxy,
    steps: list[tuple[str, str, str | None]],
) -> LifecycleOrchestrator:
    """Return an orchestrator wired to the fakes and a real catalog."""
    return LifecycleOrchestrator(
        catalog,
        PortAllocator(catalog),
        fake_runtime,
        fake_proxy,
        base_domain="example.test",
        on_step=lambda name, status, detail: steps.append((name, status, detail)),
    )
