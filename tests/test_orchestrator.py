"""Tests for the lifecycle orchestrator against a real catalog and fake providers."""
from __future__ import annotations

import logging

import pytest

from tenantctl.catalog import Catalog
from tenantctl.errors import (
    AlreadyExists,
    InvalidInput,
    NotFound,
    PersistenceFailure,
    PoolExhausted,
    ProxyFailure,
    RedeployFailure,
    RuntimeFailure,
)
from tenantctl.orchestrator import RECONCILE_MARKER, LifecycleOrchestrator, validate_name
from tenantctl.providers.runtime import ResourceLimits

from conftest import FakeProxy, FakeRuntime


def _available(catalog: Catalog) -> list[int]:
    return [int(entry["port"]) for entry in catalog.list_ports(available=True)]


def test_create_instance_allocates_lowest_port_and_records_row(
    orchestrator: LifecycleOrchestrator,
    catalog: Catalog,
    fake_runtime: FakeRuntime,
    fake_proxy: FakeProxy,
) -> None:
    """A successful create binds port, runtime, proxy site and catalog row."""
    result = orchestrator.create_instance("alpha", "demo")

    assert result["identifier"] == "alpha-demo"
    assert result["port"] == 14000
    assert result["subdomain"] == "alpha-demo"
    assert result["url"] == "https://alpha-demo.example.test"
    assert result["status"] == "running"
    assert result["container_id"] == "cid-alpha-demo"
    assert result["warnings"] == []

    record = catalog.find_active_instance("alpha-demo")
    assert record is not None
    assert record["port"] == 14000
    assert record["service_name"] == "demo"
    assert record["proxy_site_id"] == "101"

    assert _available(catalog) == [14001]
    owners = {entry["port"]: entry["instance_id"] for entry in catalog.list_ports()}
    assert owners[14000] == record["id"]
    assert owners[14001] is None

    assert fake_runtime.deployments["alpha-demo"]["resources"] == ResourceLimits(
        cpu="1", memory="512M"
    )
    assert fake_proxy.sites == {"alpha-demo.example.test": 14000}


def test_create_instance_twice_fails_without_consuming_a_port(
    orchestrator: LifecycleOrchestrator,
    catalog: Catalog,
    fake_runtime: FakeRuntime,
) -> None:
    """A second create for a live identifier is rejected before any side effect."""
    orchestrator.create_instance("alpha", "demo")

    with pytest.raises(AlreadyExists):
        orchestrator.create_instance("alpha", "demo")

    assert _available(catalog) == [14001]
    assert [call for call in fake_runtime.calls if call[0] == "provision"] == [
        ("provision", "alpha-demo")
    ]


@pytest.mark.parametrize("name", ["", "bad name", "semi;colon", "x" * 65])
def test_create_instance_rejects_invalid_names(
    orchestrator: LifecycleOrchestrator,
    catalog: Catalog,
    fake_runtime: FakeRuntime,
    name: str,
) -> None:
    """Names outside ``[A-Za-z0-9-]`` are refused with no side effects."""
    with pytest.raises(InvalidInput):
        orchestrator.create_instance(name, "demo")

    assert fake_runtime.calls == []
    assert _available(catalog) == [14000, 14001]


def test_validate_name_strips_whitespace() -> None:
    """Surrounding whitespace is not part of the name."""
    assert validate_name("  tenant-1 ", "Instance name") == "tenant-1"


def test_create_instance_unknown_template(
    orchestrator: LifecycleOrchestrator,
    fake_runtime: FakeRuntime,
) -> None:
    """Templates must be registered in the catalog."""
    with pytest.raises(NotFound):
        orchestrator.create_instance("alpha", "missing")
    assert fake_runtime.calls == []


def test_create_instance_rejects_unknown_resource_keys(
    orchestrator: LifecycleOrchestrator,
) -> None:
    """Only cpu and memory limits are accepted."""
    with pytest.raises(InvalidInput):
        orchestrator.create_instance("alpha", "demo", {"gpu": "1"})


def test_create_instance_merges_resource_overrides_with_template_defaults(
    orchestrator: LifecycleOrchestrator,
    catalog: Catalog,
    fake_runtime: FakeRuntime,
) -> None:
    """Explicit limits win; missing ones fall back to the template defaults."""
    result = orchestrator.create_instance("alpha", "demo", {"cpu": "0.5"})

    assert result["resources"] == {"cpu": "0.5", "memory": "512M"}
    assert fake_runtime.deployments["alpha-demo"]["resources"] == ResourceLimits(
        cpu="0.5", memory="512M"
    )
    record = catalog.find_active_instance("alpha-demo")
    assert record is not None
    assert record["cpu_limit"] == "0.5"
    assert record["memory_limit"] == "512M"


def test_create_instance_pool_exhausted(
    orchestrator: LifecycleOrchestrator,
    fake_runtime: FakeRuntime,
) -> None:
    """A create with no free port fails before the runtime is touched."""
    orchestrator.create_instance("alpha", "demo")
    orchestrator.create_instance("beta", "demo")

    with pytest.raises(PoolExhausted):
        orchestrator.create_instance("gamma", "demo")

    assert ("provision", "gamma-demo") not in fake_runtime.calls


def test_runtime_failure_releases_port(
    orchestrator: LifecycleOrchestrator,
    catalog: Catalog,
    fake_runtime: FakeRuntime,
    fake_proxy: FakeProxy,
) -> None:
    """A failed provision returns the port and never reaches the proxy."""
    fake_runtime.fail_provision = RuntimeFailure("compose up failed")

    with pytest.raises(RuntimeFailure, match="compose up failed"):
        orchestrator.create_instance("alpha", "demo")

    assert _available(catalog) == [14000, 14001]
    assert catalog.find_active_instance("alpha-demo") is None
    assert fake_proxy.calls == []


def test_unexpected_runtime_error_is_wrapped(
    orchestrator: LifecycleOrchestrator,
    catalog: Catalog,
    fake_runtime: FakeRuntime,
) -> None:
    """Errors outside the taxonomy surface as RuntimeFailure naming the step."""
    fake_runtime.fail_provision = KeyError("boom")

    with pytest.raises(RuntimeFailure, match="runtime.provision") as excinfo:
        orchestrator.create_instance("alpha", "demo")

    assert isinstance(excinfo.value.__cause__, KeyError)
    assert _available(catalog) == [14000, 14001]


def test_proxy_failure_rolls_back_runtime_and_port(
    orchestrator: LifecycleOrchestrator,
    catalog: Catalog,
    fake_runtime: FakeRuntime,
    fake_proxy: FakeProxy,
) -> None:
    """A proxy failure compensates the runtime and the port in reverse order."""
    original = ProxyFailure("site rejected")
    fake_proxy.fail_create = original

    with pytest.raises(ProxyFailure) as excinfo:
        orchestrator.create_instance("beta", "demo")

    assert excinfo.value.__cause__ is original
    assert excinfo.value.secondary_errors == []
    assert fake_runtime.calls == [("provision", "beta-demo"), ("delete", "beta-demo")]
    assert "beta-demo" not in fake_runtime.deployments
    assert _available(catalog) == [14000, 14001]
    assert catalog.find_active_instance("beta-demo") is None
    assert catalog.list_instances() == []


def test_proxy_failure_keeps_primary_error_when_compensation_fails(
    orchestrator: LifecycleOrchestrator,
    catalog: Catalog,
    fake_runtime: FakeRuntime,
    fake_proxy: FakeProxy,
) -> None:
    """Compensation failures are attached as secondaries, remaining steps still run."""
    fake_proxy.fail_create = ProxyFailure("site rejected")
    fake_runtime.fail_delete = RuntimeFailure("rm failed")

    with pytest.raises(ProxyFailure, match="site rejected") as excinfo:
        orchestrator.create_instance("beta", "demo")

    secondaries = excinfo.value.secondary_errors
    assert [item.step for item in secondaries] == ["compensate:runtime.provision"]
    assert "rm failed" in str(secondaries[0])
    assert _available(catalog) == [14000, 14001]


def test_failed_create_after_successful_one_leaves_pool_consistent(
    orchestrator: LifecycleOrchestrator,
    catalog: Catalog,
    fake_proxy: FakeProxy,
) -> None:
    """alpha keeps 14000 while a failed beta returns 14001."""
    orchestrator.create_instance("alpha", "demo")
    fake_proxy.fail_create = ProxyFailure("site rejected")

    with pytest.raises(ProxyFailure):
        orchestrator.create_instance("beta", "demo")

    assert _available(catalog) == [14001]
    assert [entry["identifier"] for entry in catalog.list_instances()] == ["alpha-demo"]


def test_persistence_failure_logs_reconcile_marker(
    orchestrator: LifecycleOrchestrator,
    catalog: Catalog,
    fake_runtime: FakeRuntime,
    fake_proxy: FakeProxy,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """A catalog write failure after side effects is surfaced, never rolled back."""

    def fail_record(**_: object) -> dict[str, object]:
        raise PersistenceFailure("database is locked")

    monkeypatch.setattr(catalog, "record_instance", fail_record)
    caplog.set_level(logging.CRITICAL, logger="tenantctl.orchestrator")

    with pytest.raises(PersistenceFailure, match=RECONCILE_MARKER):
        orchestrator.create_instance("alpha", "demo")

    critical = [record for record in caplog.records if record.levelno == logging.CRITICAL]
    assert critical
    assert RECONCILE_MARKER in critical[0].getMessage()
    assert ("delete", "alpha-demo") not in fake_runtime.calls
    assert "alpha-demo.example.test" in fake_proxy.sites
    assert 14000 not in _available(catalog)


def test_missing_certificate_is_reported_as_warning(
    orchestrator: LifecycleOrchestrator,
    fake_proxy: FakeProxy,
) -> None:
    """A site without TLS still succeeds but carries a warning."""
    fake_proxy.issue_certificates = False

    result = orchestrator.create_instance("alpha", "demo")

    assert result["warnings"] == ["TLS certificate for alpha-demo.example.test was not issued."]


def test_create_reports_steps_in_order(
    orchestrator: LifecycleOrchestrator,
    steps: list[tuple[str, str, str | None]],
) -> None:
    """Each provisioning step is reported to the step callback."""
    orchestrator.create_instance("alpha", "demo")

    assert [(name, status) for name, status, _ in steps] == [
        ("validate", "ok"),
        ("ports.allocate", "ok"),
        ("runtime.provision", "ok"),
        ("proxy.create_site", "ok"),
        ("catalog.record", "ok"),
    ]


def test_compensation_steps_are_reported(
    orchestrator: LifecycleOrchestrator,
    fake_proxy: FakeProxy,
    steps: list[tuple[str, str, str | None]],
) -> None:
    """Failed and compensated steps are visible to the step callback."""
    fake_proxy.fail_create = ProxyFailure("site rejected")

    with pytest.raises(ProxyFailure):
        orchestrator.create_instance("beta", "demo")

    assert [(name, status) for name, status, _ in steps[1:]] == [
        ("ports.allocate", "ok"),
        ("runtime.provision", "ok"),
        ("proxy.create_site", "failed"),
        ("runtime.provision", "compensated"),
        ("ports.allocate", "compensated"),
    ]


def test_delete_instance_releases_port_when_site_already_gone(
    orchestrator: LifecycleOrchestrator,
    catalog: Catalog,
    fake_runtime: FakeRuntime,
    fake_proxy: FakeProxy,
) -> None:
    """A missing proxy site does not block the delete."""
    orchestrator.create_instance("alpha", "demo")
    fake_proxy.sites.clear()

    result = orchestrator.delete("alpha-demo")

    assert result["status"] == "deleted"
    assert result["port_released"] == 14000
    assert result["proxy"] == {"domain": "alpha-demo.example.test", "status": "not_found"}
    assert ("delete", "alpha-demo") in fake_runtime.calls
    assert _available(catalog) == [14000, 14001]
    assert catalog.find_active_instance("alpha-demo") is None
    assert catalog.list_instances() == []


def test_delete_instance_tolerates_proxy_errors(
    orchestrator: LifecycleOrchestrator,
    catalog: Catalog,
    fake_proxy: FakeProxy,
) -> None:
    """Proxy failures during delete are reported, not raised."""
    orchestrator.create_instance("alpha", "demo")
    fake_proxy.fail_delete = ProxyFailure("control plane down")

    result = orchestrator.delete("alpha-demo")

    assert result["status"] == "deleted"
    assert result["proxy"]["status"] == "error"  # type: ignore[index]
    assert _available(catalog) == [14000, 14001]


def test_delete_runtime_failure_keeps_catalog_row(
    orchestrator: LifecycleOrchestrator,
    catalog: Catalog,
    fake_runtime: FakeRuntime,
) -> None:
    """The catalog row survives when the runtime cannot be removed."""
    orchestrator.create_instance("alpha", "demo")
    fake_runtime.fail_delete = RuntimeFailure("permission denied")

    with pytest.raises(RuntimeFailure):
        orchestrator.delete("alpha-demo")

    record = catalog.find_active_instance("alpha-demo")
    assert record is not None
    assert record["status"] == "running"
    assert _available(catalog) == [14001]


def test_delete_unknown_instance(orchestrator: LifecycleOrchestrator) -> None:
    """Deleting an identifier that is not live raises NotFound."""
    with pytest.raises(NotFound):
        orchestrator.delete("ghost-demo")


def test_identifier_can_be_reused_after_delete(
    orchestrator: LifecycleOrchestrator,
    catalog: Catalog,
) -> None:
    """Soft-deleted rows do not block a new instance with the same identifier."""
    orchestrator.create_instance("alpha", "demo")
    orchestrator.delete("alpha-demo")

    result = orchestrator.create_instance("alpha", "demo")

    assert result["port"] == 14000
    live = catalog.list_instances()
    assert [entry["identifier"] for entry in live] == ["alpha-demo"]


def test_stop_and_start_update_catalog_status(
    orchestrator: LifecycleOrchestrator,
    catalog: Catalog,
) -> None:
    """Lifecycle commands persist the resulting status."""
    orchestrator.create_instance("alpha", "demo")

    stopped = orchestrator.stop("alpha-demo")
    assert stopped["status"] == "stopped"
    assert [entry["identifier"] for entry in catalog.list_instances(status="stopped")] == [
        "alpha-demo"
    ]

    started = orchestrator.start("alpha-demo")
    assert started["status"] == "running"

    restarted = orchestrator.restart("alpha-demo")
    assert restarted["status"] == "running"


def test_lifecycle_on_unknown_instance(
    orchestrator: LifecycleOrchestrator,
    fake_runtime: FakeRuntime,
) -> None:
    """The runtime is not called for identifiers the catalog does not know."""
    with pytest.raises(NotFound):
        orchestrator.stop("ghost-demo")
    assert fake_runtime.calls == []


def test_redeploy_failure_during_up_records_stopped(
    orchestrator: LifecycleOrchestrator,
    catalog: Catalog,
    fake_runtime: FakeRuntime,
) -> None:
    """A deployment torn down but not restarted is recorded as stopped."""
    orchestrator.create_instance("alpha", "demo")
    fake_runtime.fail_redeploy = RedeployFailure("up failed", stage="up")

    with pytest.raises(RedeployFailure):
        orchestrator.redeploy("alpha-demo")

    record = catalog.find_active_instance("alpha-demo")
    assert record is not None
    assert record["status"] == "stopped"


def test_redeploy_failure_during_down_keeps_status(
    orchestrator: LifecycleOrchestrator,
    catalog: Catalog,
    fake_runtime: FakeRuntime,
) -> None:
    """A failed teardown leaves the recorded status untouched."""
    orchestrator.create_instance("alpha", "demo")
    fake_runtime.fail_redeploy = RedeployFailure("down failed", stage="down")

    with pytest.raises(RedeployFailure):
        orchestrator.redeploy("alpha-demo")

    record = catalog.find_active_instance("alpha-demo")
    assert record is not None
    assert record["status"] == "running"


def test_redeploy_success_marks_running(
    orchestrator: LifecycleOrchestrator,
    catalog: Catalog,
) -> None:
    """A redeploy brings a stopped instance back to running."""
    orchestrator.create_instance("alpha", "demo")
    orchestrator.stop("alpha-demo")

    result = orchestrator.redeploy("alpha-demo")

    assert result["status"] == "running"


def test_status_syncs_live_state_into_catalog(
    orchestrator: LifecycleOrchestrator,
    catalog: Catalog,
    fake_runtime: FakeRuntime,
) -> None:
    """An exited container is recorded as stopped."""
    orchestrator.create_instance("alpha", "demo")
    fake_runtime.live["alpha-demo"] = {
        "status": "exited",
        "running": False,
        "started_at": "2026-01-01T00:00:00Z",
        "finished_at": "2026-01-01T01:00:00Z",
    }

    result = orchestrator.status("alpha-demo")

    assert result["identifier"] == "alpha-demo"
    assert result["status"] == "exited"
    assert result["catalog_status"] == "stopped"
    record = catalog.find_active_instance("alpha-demo")
    assert record is not None
    assert record["status"] == "stopped"


def test_status_for_missing_container_keeps_catalog(
    orchestrator: LifecycleOrchestrator,
    catalog: Catalog,
) -> None:
    """A vanished container is reported but does not rewrite the catalog."""
    orchestrator.create_instance("alpha", "demo")

    result = orchestrator.status("alpha-demo")

    assert result["status"] == "not_found"
    assert result["catalog_status"] == "running"


def test_backup_and_logs_delegate_to_runtime(
    orchestrator: LifecycleOrchestrator,
    fake_runtime: FakeRuntime,
) -> None:
    """Backup and logs are passed through for live instances."""
    orchestrator.create_instance("alpha", "demo")

    backup = orchestrator.backup("alpha-demo")
    assert backup["identifier"] == "alpha-demo"
    assert backup["size"] == 42

    assert orchestrator.logs("alpha-demo", 5) == "alpha-demo: last 5 lines\n"
    assert ("logs", "alpha-demo") in fake_runtime.calls


def test_list_instances_newest_first(orchestrator: LifecycleOrchestrator) -> None:
    """Listing returns the most recent instance first and honours filters."""
    orchestrator.create_instance("alpha", "demo")
    orchestrator.create_instance("beta", "demo")

    listed = orchestrator.list_instances()
    assert [entry["identifier"] for entry in listed] == ["beta-demo", "alpha-demo"]

    filtered = orchestrator.list_instances(instance_name="alpha")
    assert [entry["identifier"] for entry in filtered] == ["alpha-demo"]
    assert orchestrator.list_instances(service_name="other") == []


def test_list_services_reports_registered_templates(
    orchestrator: LifecycleOrchestrator,
) -> None:
    """Registered templates are exposed with their defaults."""
    services = orchestrator.list_services()
    assert [service["name"] for service in services] == ["demo"]
    assert services[0]["default_memory"] == "512M"
