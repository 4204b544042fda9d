"""Typer-powered command line interface for ``tenantctl``.

Every command opens a structured operation scope, delegates to the
:class:`~tenantctl.orchestrator.LifecycleOrchestrator` (or a catalog helper)
and maps failures onto the exit codes in :mod:`tenantctl.exit_codes`.
"""
from __future__ import annotations

import json
import logging
import textwrap
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn, cast

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .backups import BackupError, BackupsRegistry
from .catalog import Catalog
from .config import AppConfig, ConfigError, load_config
from .errors import (
    AlreadyExists,
    InvalidInput,
    NotFound,
    PersistenceFailure,
    PoolExhausted,
    ProxyFailure,
    RuntimeFailure,
    TenantctlError,
)
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger
from .orchestrator import LifecycleOrchestrator
from .ports import PortAllocator
from .providers import ComposeRuntime, ProxyControlClient
from .templates import TemplateError, TemplateLibrary

console = Console()
error_console = Console(stderr=True)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to tenantctl's YAML config file.",
)

_HANDLED_ERRORS = (TenantctlError, ConfigError, BackupError, TemplateError, OSError)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Per-tenant container instance manager.

        Provisions service templates as isolated container deployments, each
        reachable on its own subdomain through the reverse-proxy control plane.
        """
    ).strip(),
)
catalog_app = typer.Typer(help="Initialise the catalog database.")
services_app = typer.Typer(help="Inspect and register service templates.")
ports_app = typer.Typer(help="Inspect the port pool.")
proxy_app = typer.Typer(help="Check the reverse-proxy control plane.")
instances_app = typer.Typer(help="Create and operate tenant instances.")
backups_app = typer.Typer(help="Inspect instance backups.")
config_app = typer.Typer(help="Inspect global configuration.")

app.add_typer(catalog_app, name="catalog")
app.add_typer(services_app, name="services")
app.add_typer(ports_app, name="ports")
app.add_typer(proxy_app, name="proxy")
app.add_typer(instances_app, name="instances")
app.add_typer(backups_app, name="backups")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    catalog: Catalog
    ports: PortAllocator
    templates: TemplateLibrary
    runtime: ComposeRuntime
    proxy: ProxyControlClient
    backups: BackupsRegistry

    def orchestrator(self, op: OperationScope | None = None) -> LifecycleOrchestrator:
        """Return an orchestrator that records its steps on *op*."""
        on_step: Callable[[str, str, str | None], None] | None = None
        if op is not None:
            scope = op

            def _record(name: str, status: str, detail: str | None) -> None:
                scope.add_step(name, status=status, detail=detail)

            on_step = _record
        return LifecycleOrchestrator(
            self.catalog,
            self.ports,
            self.runtime,
            self.proxy,
            base_domain=self.config.base_domain,
            on_step=on_step,
        )


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        error_console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc

    catalog = Catalog.from_config(config)
    compose_runtime = ComposeRuntime.from_config(config)
    runtime = RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        catalog=catalog,
        ports=PortAllocator(catalog),
        templates=compose_runtime.templates,
        runtime=compose_runtime,
        proxy=ProxyControlClient.from_config(config),
        backups=compose_runtime.backups,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


def _configure_logging(level: str) -> None:
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        raise typer.BadParameter(f"Unknown log level '{level}'.", param_hint="--log-level")
    logging.basicConfig(
        level=numeric,
        format="%(message)s",
        handlers=[RichHandler(console=error_console, show_path=False)],
    )
    logging.getLogger().setLevel(numeric)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the tenantctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    log_level: str = typer.Option(
        "warning",
        "--log-level",
        help="Diagnostic log level written to stderr (debug, info, warning, error).",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    _configure_logging(log_level)
    if version:
        console.print(f"tenantctl {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# Error helpers -------------------------------------------------------
def _exit_code_for(exc: BaseException) -> int:
    if isinstance(exc, (InvalidInput, AlreadyExists, PoolExhausted, ConfigError, TemplateError)):
        return int(ExitCode.VALIDATION)
    if isinstance(exc, NotFound):
        return int(ExitCode.NOT_FOUND)
    if isinstance(exc, (RuntimeFailure, ProxyFailure)):
        return int(ExitCode.PROVIDER)
    if isinstance(exc, (PersistenceFailure, BackupError, OSError)):
        return int(ExitCode.ENVIRONMENT)
    return int(ExitCode.PROVIDER)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _failed(op: OperationScope, exc: BaseException) -> NoReturn:
    message = getattr(exc, "message", None) or str(exc)
    errors = [message]
    for secondary in getattr(exc, "secondary_errors", []):
        console.print(f"[yellow]cleanup:[/yellow] {secondary}")
        errors.append(f"cleanup {secondary}")
    _command_error(op, message, rc=_exit_code_for(exc), errors=errors)


def _emit(data: Mapping[str, object], *, json_output: bool, title: str | None = None) -> None:
    if json_output:
        console.print_json(data=dict(data))
        return
    table = Table(show_header=False, title=title)
    for key, value in data.items():
        if value in (None, ""):
            continue
        if isinstance(value, (dict, list)):
            rendered = json.dumps(value, indent=2, sort_keys=True)
        else:
            rendered = str(value)
        table.add_row(key.replace("_", " ").title(), rendered)
    console.print(table)


# Catalog -------------------------------------------------------------
@catalog_app.command("init")
def catalog_init(ctx: typer.Context) -> None:
    """Create catalog tables and seed the configured port range."""
    runtime = _get_runtime(ctx)
    ports = runtime.config.ports

    with runtime.logger.operation(
        "catalog init",
        args={"start": ports.start, "end": ports.end},
        target={"kind": "catalog", "url": runtime.catalog.url},
    ) as op:
        try:
            runtime.catalog.create_schema()
            op.add_step("catalog.schema", status="ok")
            seeded = runtime.catalog.seed_ports(ports.start, ports.end)
            op.add_step("catalog.seed_ports", status="ok", detail=str(seeded))
        except _HANDLED_ERRORS as exc:
            _failed(op, exc)

        console.print(
            f"[green]Catalog ready[/green]: {seeded} new port(s) seeded "
            f"from {ports.start}-{ports.end}."
        )
        op.success("Catalog initialised.", changed=seeded, context={"seeded": seeded})


# Services ------------------------------------------------------------
@services_app.command("list")
def services_list(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit services as JSON instead of a table.",
    ),
) -> None:
    """List registered service templates."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "services list",
        args={"json": json_output},
        target={"kind": "service"},
    ) as op:
        try:
            services = runtime.orchestrator().list_services()
        except _HANDLED_ERRORS as exc:
            _failed(op, exc)

        if json_output:
            console.print_json(data={"services": services})
            op.success("Reported services as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Name", style="bold")
        table.add_column("Version")
        table.add_column("CPU")
        table.add_column("Memory")
        table.add_column("Description")

        if not services:
            table.add_row("(none)", "", "", "", "")
        else:
            for service in services:
                table.add_row(
                    str(service["name"]),
                    str(service.get("version") or ""),
                    str(service.get("default_cpu") or ""),
                    str(service.get("default_memory") or ""),
                    str(service.get("description") or ""),
                )

        console.print(table)
        op.success("Reported services.", changed=0)


@services_app.command("sync")
def services_sync(ctx: typer.Context) -> None:
    """Register every template directory under ``templates_dir``."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "services sync",
        target={"kind": "service", "templates_dir": runtime.templates.root},
    ) as op:
        try:
            registered = runtime.templates.sync(runtime.catalog)
        except _HANDLED_ERRORS as exc:
            _failed(op, exc)

        if not registered:
            console.print(f"[yellow]No templates found in {runtime.templates.root}.[/yellow]")
            op.warning(
                "No templates registered.",
                warnings=[f"No template directories under {runtime.templates.root}"],
            )
            return
        names = [str(entry["name"]) for entry in registered]
        console.print(f"[green]Registered[/green] {len(names)} template(s): {', '.join(names)}")
        op.success("Templates registered.", changed=len(names), context={"templates": names})


# Ports ---------------------------------------------------------------
@ports_app.command("list")
def ports_list(
    ctx: typer.Context,
    available_only: bool = typer.Option(
        False,
        "--available",
        help="Only show ports that can be allocated.",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit the pool as JSON instead of a table.",
    ),
) -> None:
    """List port pool entries and their owners."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "ports list",
        args={"available": available_only, "json": json_output},
        target={"kind": "ports"},
    ) as op:
        try:
            entries = runtime.catalog.list_ports(available=True if available_only else None)
        except _HANDLED_ERRORS as exc:
            _failed(op, exc)

        if json_output:
            console.print_json(data={"ports": entries})
            op.success("Reported port pool as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Port", style="bold")
        table.add_column("Available")
        table.add_column("Instance")

        if not entries:
            table.add_row("(none)", "", "")
        else:
            for entry in entries:
                owner = entry.get("instance_id")
                table.add_row(
                    str(entry["port"]),
                    "yes" if entry["available"] else "no",
                    "" if owner is None else str(owner),
                )

        console.print(table)
        op.success("Reported port pool.", changed=0)


# Proxy ---------------------------------------------------------------
@proxy_app.command("check")
def proxy_check(ctx: typer.Context) -> None:
    """Verify that the control plane accepts the configured credentials."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "proxy check",
        target={"kind": "proxy", "url": runtime.config.proxy.url},
    ) as op:
        if not runtime.proxy.test_connection():
            _command_error(
                op,
                f"Could not log in to the proxy control plane at {runtime.config.proxy.url}.",
                rc=int(ExitCode.PROVIDER),
            )
        console.print(f"[green]Proxy control plane reachable[/green] at {runtime.config.proxy.url}.")
        op.success("Proxy login succeeded.", changed=0)


# Instances -----------------------------------------------------------
@instances_app.command("create")
def instance_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Instance name (letters, numbers, dashes)."),
    template: str = typer.Argument(..., help="Service template to deploy."),
    cpu: str | None = typer.Option(None, "--cpu", help="CPU limit, e.g. 1 or 0.5."),
    memory: str | None = typer.Option(None, "--memory", help="Memory limit, e.g. 512M."),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit the created instance as JSON.",
    ),
) -> None:
    """Provision a new instance from a service template."""
    runtime = _get_runtime(ctx)
    resources: dict[str, object] = {}
    if cpu:
        resources["cpu"] = cpu
    if memory:
        resources["memory"] = memory

    with runtime.logger.operation(
        "instances create",
        args={"name": name, "template": template, **resources},
        target={"kind": "instance", "name": name, "template": template},
    ) as op:
        try:
            result = runtime.orchestrator(op).create_instance(name, template, resources)
        except _HANDLED_ERRORS as exc:
            _failed(op, exc)

        warnings = [str(item) for item in cast(list[object], result.get("warnings") or [])]
        if json_output:
            console.print_json(data=result)
        else:
            console.print(
                f"[green]Created[/green] {result['identifier']} on port {result['port']} "
                f"-> {result['url']}"
            )
            for warning in warnings:
                console.print(f"[yellow]warning:[/yellow] {warning}")
        context = {key: result[key] for key in ("identifier", "port", "url", "data_path")}
        if warnings:
            op.warning("Instance created with warnings.", warnings=warnings, changed=4, context=context)
        else:
            op.success("Instance created.", changed=4, context=context)


@instances_app.command("list")
def instance_list(
    ctx: typer.Context,
    name: str | None = typer.Option(None, "--name", help="Filter by instance name."),
    template: str | None = typer.Option(None, "--template", help="Filter by template name."),
    status: str | None = typer.Option(None, "--status", help="Filter by status."),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit instances as JSON instead of a table.",
    ),
) -> None:
    """List live instances, newest first."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "instances list",
        args={"name": name, "template": template, "status": status, "json": json_output},
        target={"kind": "instance", "scope": "catalog"},
    ) as op:
        try:
            entries = runtime.orchestrator().list_instances(
                instance_name=name,
                service_name=template,
                status=status,
            )
        except _HANDLED_ERRORS as exc:
            _failed(op, exc)

        if json_output:
            console.print_json(data={"instances": entries})
            op.success("Reported instance list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Identifier", style="bold")
        table.add_column("Template")
        table.add_column("Subdomain")
        table.add_column("Port")
        table.add_column("Status")
        table.add_column("Created")

        if not entries:
            table.add_row("(none)", "", "", "", "", "")
        else:
            for entry in entries:
                table.add_row(
                    str(entry["identifier"]),
                    str(entry["service_name"]),
                    f"{entry['subdomain']}.{runtime.config.base_domain}",
                    str(entry["port"]),
                    str(entry["status"]),
                    str(entry.get("created_at") or ""),
                )

        console.print(table)
        op.success("Reported instance list.", changed=0)


@instances_app.command("status")
def instance_status(
    ctx: typer.Context,
    identifier: str = typer.Argument(..., help="Instance identifier (<name>-<template>)."),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit status as JSON instead of a table.",
    ),
) -> None:
    """Show live runtime status for an instance."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "instances status",
        args={"json": json_output},
        target={"kind": "instance", "identifier": identifier},
    ) as op:
        try:
            result = runtime.orchestrator(op).status(identifier)
        except _HANDLED_ERRORS as exc:
            _failed(op, exc)
        _emit(result, json_output=json_output, title=identifier)
        op.success("Reported instance status.", changed=0, context=result)


def _lifecycle_command(
    ctx: typer.Context,
    command: str,
    identifier: str,
    action: Callable[[LifecycleOrchestrator, str], Mapping[str, object]],
    done: str,
) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        f"instances {command}",
        target={"kind": "instance", "identifier": identifier},
    ) as op:
        try:
            result = action(runtime.orchestrator(op), identifier)
        except _HANDLED_ERRORS as exc:
            _failed(op, exc)
        console.print(f"[green]{done}[/green] {identifier} (status: {result.get('status')}).")
        op.success(f"Instance {command} completed.", changed=1, context=dict(result))


@instances_app.command("stop")
def instance_stop(
    ctx: typer.Context,
    identifier: str = typer.Argument(..., help="Instance identifier."),
) -> None:
    """Stop an instance."""
    _lifecycle_command(ctx, "stop", identifier, lambda orch, ident: orch.stop(ident), "Stopped")


@instances_app.command("start")
def instance_start(
    ctx: typer.Context,
    identifier: str = typer.Argument(..., help="Instance identifier."),
) -> None:
    """Start a stopped instance."""
    _lifecycle_command(ctx, "start", identifier, lambda orch, ident: orch.start(ident), "Started")


@instances_app.command("restart")
def instance_restart(
    ctx: typer.Context,
    identifier: str = typer.Argument(..., help="Instance identifier."),
) -> None:
    """Restart an instance."""
    _lifecycle_command(
        ctx, "restart", identifier, lambda orch, ident: orch.restart(ident), "Restarted"
    )


@instances_app.command("redeploy")
def instance_redeploy(
    ctx: typer.Context,
    identifier: str = typer.Argument(..., help="Instance identifier."),
) -> None:
    """Recreate an instance from its deployment descriptor."""
    _lifecycle_command(
        ctx, "redeploy", identifier, lambda orch, ident: orch.redeploy(ident), "Redeployed"
    )


@instances_app.command("delete")
def instance_delete(
    ctx: typer.Context,
    identifier: str = typer.Argument(..., help="Instance identifier."),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Skip the confirmation prompt.",
    ),
) -> None:
    """Delete an instance, its volumes and its proxy site."""
    if not yes:
        typer.confirm(f"Delete {identifier} and all of its data?", abort=True)
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "instances delete",
        args={"yes": yes},
        target={"kind": "instance", "identifier": identifier},
    ) as op:
        try:
            result = runtime.orchestrator(op).delete(identifier)
        except _HANDLED_ERRORS as exc:
            _failed(op, exc)

        proxy = result.get("proxy")
        proxy_info = dict(proxy) if isinstance(proxy, Mapping) else {}
        console.print(
            f"[green]Deleted[/green] {identifier}; port {result['port_released']} released."
        )
        if proxy_info.get("status") == "error":
            message = f"Proxy site cleanup failed: {proxy_info.get('error')}"
            console.print(f"[yellow]warning:[/yellow] {message}")
            op.warning("Instance deleted with warnings.", warnings=[message], changed=3, context=result)
            return
        op.success("Instance deleted.", changed=3, context=result)


@instances_app.command("backup")
def instance_backup(
    ctx: typer.Context,
    identifier: str = typer.Argument(..., help="Instance identifier."),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit backup details as JSON.",
    ),
) -> None:
    """Archive an instance's data directory."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "instances backup",
        args={"json": json_output},
        target={"kind": "instance", "identifier": identifier},
    ) as op:
        try:
            result = runtime.orchestrator(op).backup(identifier)
        except _HANDLED_ERRORS as exc:
            _failed(op, exc)

        if json_output:
            console.print_json(data=result)
        else:
            console.print(
                f"[green]Backup created[/green]: {result['backup_file']} ({result['size']} bytes)"
            )
        op.success(
            "Backup created.",
            changed=1,
            backups=[str(result["backup_file"])],
            context=result,
        )


@instances_app.command("logs")
def instance_logs(
    ctx: typer.Context,
    identifier: str = typer.Argument(..., help="Instance identifier."),
    lines: int = typer.Option(100, "--lines", "-n", min=1, help="Number of lines to show."),
) -> None:
    """Show the tail of an instance's combined output."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "instances logs",
        args={"lines": lines},
        target={"kind": "instance", "identifier": identifier},
    ) as op:
        try:
            output = runtime.orchestrator(op).logs(identifier, lines)
        except _HANDLED_ERRORS as exc:
            _failed(op, exc)
        console.print(output, end="", markup=False, highlight=False)
        op.success("Displayed instance logs.", changed=0)


# Backups -------------------------------------------------------------
@backups_app.command("list")
def backup_list(
    ctx: typer.Context,
    instance: str | None = typer.Option(
        None,
        "--instance",
        "-i",
        help="Filter backups for a specific instance identifier.",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit backup details as JSON.",
    ),
) -> None:
    """List known backups from the index."""
    runtime = _get_runtime(ctx)

    with runtime.logger.operation(
        "backups list",
        args={"instance": instance, "json": json_output},
        target={"kind": "backup", "index": runtime.backups.index},
    ) as op:
        try:
            if instance:
                entries = runtime.backups.entries_for_instance(instance)
            else:
                entries = runtime.backups.list_entries()
        except _HANDLED_ERRORS as exc:
            _failed(op, exc)

        if json_output:
            console.print_json(data={"backups": entries})
            op.success("Reported backups as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("Instance")
        table.add_column("Created")
        table.add_column("Size")
        table.add_column("Path")

        if not entries:
            table.add_row("(none)", "", "", "", "")
        else:
            for entry in entries:
                table.add_row(
                    str(entry.get("id", "")),
                    str(entry.get("instance", "")),
                    str(entry.get("created_at", "")),
                    str(entry.get("size_bytes", "")),
                    str(entry.get("path", "")),
                )

        console.print(table)
        op.success("Reported backups.", changed=0)


# Config --------------------------------------------------------------
@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


if __name__ == "__main__":  # pragma: no cover - manual execution hook
    main()
