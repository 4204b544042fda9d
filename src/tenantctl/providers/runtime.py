"""Docker Compose runtime driver for tenant instances.

Each instance owns a working directory ``<instance_root>/<identifier>`` that
holds the copied deployment descriptor, the rendered ``.env`` file and a
``data/`` directory mounted by the service. All runtime interaction goes
through the ``docker`` CLI with a bounded timeout.
"""
from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

from ..backups import (
    BackupEntryBuilder,
    BackupError,
    BackupsRegistry,
    backup_timestamp,
    compute_checksum,
    create_archive,
)
from ..config import AppConfig, parse_owner
from ..errors import (
    CleanupReport,
    InvalidInput,
    NotFound,
    RedeployFailure,
    RuntimeFailure,
    TenantctlError,
)
from ..templates import TemplateError, TemplateLibrary

LOGGER = logging.getLogger(__name__)

DATA_DIR_NAME = "data"
ENV_FILE_NAME = ".env"
_MISSING_CONTAINER_MARKERS = ("no such container", "no such object")


def make_identifier(instance_name: str, template_name: str) -> str:
    """Return the stable identifier shared by runtime, proxy and catalog."""
    return f"{instance_name}-{template_name}"


@dataclass(frozen=True)
class ResourceLimits:
    """CPU and memory bounds applied to an instance container."""

    cpu: str | None = None
    memory: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"cpu": self.cpu, "memory": self.memory}


@dataclass(slots=True)
class RuntimeHandle:
    """What the runtime reports back after a successful provision."""

    identifier: str
    container_id: str
    status: str
    workdir: Path
    data_path: Path
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "identifier": self.identifier,
            "container_id": self.container_id,
            "status": self.status,
            "workdir": str(self.workdir),
            "data_path": str(self.data_path),
            "warnings": list(self.warnings),
        }


@dataclass(slots=True)
class ComposeRuntime:
    """Materialise, run and tear down compose deployments for instances."""

    instance_root: Path
    base_domain: str
    templates: TemplateLibrary
    backups: BackupsRegistry
    docker_bin: str = "docker"
    tar_bin: str = "tar"
    timeout: float = 300.0
    data_owner: str | None = None

    @classmethod
    def from_config(cls, config: AppConfig) -> ComposeRuntime:
        """Build a runtime driver from resolved configuration."""
        return cls(
            instance_root=config.instance_root,
            base_domain=config.base_domain,
            templates=TemplateLibrary(config.templates_dir),
            backups=BackupsRegistry(root=config.backups.root, index=config.backups.index),
            docker_bin=config.runtime.docker_bin,
            timeout=config.runtime.timeout,
            data_owner=config.runtime.data_owner,
        )

    # Paths -----------------------------------------------------------
    def workdir(self, identifier: str) -> Path:
        """Return the working directory for *identifier*."""
        return self.instance_root / identifier

    def data_dir(self, identifier: str) -> Path:
        """Return the persistent data directory for *identifier*."""
        return self.workdir(identifier) / DATA_DIR_NAME

    # Provisioning ----------------------------------------------------
    def provision(
        self,
        instance_name: str,
        template_name: str,
        subdomain: str,
        port: int,
        resources: ResourceLimits | None = None,
    ) -> RuntimeHandle:
        """Create the working tree for a new instance and bring it up.

        Any failure removes whatever this call created (containers first,
        then the working directory) before the error propagates. Cleanup
        failures are attached to the raised error as secondary errors.
        """
        identifier = make_identifier(instance_name, template_name)
        workdir = self.workdir(identifier)
        data_dir = self.data_dir(identifier)
        created_workdir = False
        started = False
        warnings: list[str] = []

        try:
            definition = self.templates.get(template_name)
            self.instance_root.mkdir(parents=True, exist_ok=True)
            try:
                workdir.mkdir(exist_ok=False)
            except FileExistsError as exc:
                raise RuntimeFailure(
                    f"Working directory {workdir} already exists; refusing to overwrite it."
                ) from exc
            created_workdir = True
            data_dir.mkdir()
            self._assign_data_owner(data_dir)

            shutil.copyfile(definition.descriptor_path, workdir / definition.descriptor_path.name)
            rendered = self.templates.render_env(
                template_name,
                {
                    "INSTANCE_NAME": instance_name,
                    "CONTAINER_NAME": identifier,
                    "SUBDOMAIN": subdomain,
                    "PORT": port,
                    "BASE_DOMAIN": self.base_domain,
                },
            )
            for placeholder in rendered.unresolved:
                warnings.append(f"Unresolved placeholder ${{{placeholder}}} left in {ENV_FILE_NAME}")
            (workdir / ENV_FILE_NAME).write_text(rendered.content, encoding="utf-8")

            started = True
            self._compose(identifier, "up", "-d")
            container_id, status = self._resolve_container(identifier)
            if resources is not None and (resources.cpu or resources.memory):
                self._apply_limits(container_id, resources)
        except Exception as exc:
            report = self._cleanup_failed_provision(
                identifier,
                remove_containers=started,
                remove_workdir=created_workdir,
            )
            if isinstance(exc, TenantctlError):
                exc.add_secondary(report.errors)
                raise
            if isinstance(exc, (OSError, TemplateError)):
                raise RuntimeFailure(
                    f"Failed to provision {identifier}: {exc}",
                    secondary_errors=report.errors,
                ) from exc
            raise

        LOGGER.info("Provisioned %s (container %s, status %s)", identifier, container_id, status)
        return RuntimeHandle(
            identifier=identifier,
            container_id=container_id,
            status=status,
            workdir=workdir,
            data_path=data_dir,
            warnings=warnings,
        )

    # Lifecycle -------------------------------------------------------
    def start(self, identifier: str) -> dict[str, object]:
        """Start the instance container."""
        self._docker("start", identifier)
        return {"status": "running"}

    def stop(self, identifier: str) -> dict[str, object]:
        """Stop the instance container."""
        self._docker("stop", identifier)
        return {"status": "stopped"}

    def restart(self, identifier: str) -> dict[str, object]:
        """Restart the instance container."""
        self._docker("restart", identifier)
        return {"status": "running"}

    def redeploy(self, identifier: str) -> dict[str, object]:
        """Tear the deployment down and bring it back up from its descriptor.

        The two halves are not atomic. A failure in ``up`` leaves the
        deployment stopped and is reported as :class:`RedeployFailure` with
        ``stage="up"``; nothing is retried.
        """
        self._require_workdir(identifier)
        try:
            self._compose(identifier, "down")
        except RuntimeFailure as exc:
            raise RedeployFailure(
                f"Redeploy of {identifier} failed while stopping: {exc.message}",
                stage="down",
            ) from exc
        try:
            self._compose(identifier, "up", "-d")
        except RuntimeFailure as exc:
            raise RedeployFailure(
                f"Redeploy of {identifier} failed while starting; the deployment is stopped: "
                f"{exc.message}",
                stage="up",
            ) from exc
        return {"status": "running"}

    def delete(self, identifier: str) -> dict[str, object]:
        """Tear down the deployment with its volumes and remove the working tree."""
        workdir = self.workdir(identifier)
        if workdir.is_dir():
            try:
                self._compose(identifier, "down", "-v")
            except RuntimeFailure as exc:
                LOGGER.warning("compose down for %s failed; continuing: %s", identifier, exc)
        else:
            LOGGER.info("Working directory for %s already absent", identifier)
        if workdir.exists():
            try:
                shutil.rmtree(workdir)
            except OSError as exc:
                raise RuntimeFailure(f"Failed to remove {workdir}: {exc}") from exc
        return {"status": "deleted"}

    def status(self, identifier: str) -> dict[str, object]:
        """Return the live container state; never raises for a missing container."""
        try:
            result = self._run_command(
                [self.docker_bin, "inspect", "--format", "{{json .State}}", identifier],
                check=False,
                error_prefix=f"{self.docker_bin} inspect",
            )
        except RuntimeFailure as exc:
            LOGGER.warning("Status lookup for %s failed: %s", identifier, exc)
            return _missing_status()
        if result.returncode != 0:
            return _missing_status()
        try:
            state = json.loads((result.stdout or "").strip() or "{}")
        except json.JSONDecodeError:
            LOGGER.warning("Unparseable inspect output for %s", identifier)
            return _missing_status()
        if not isinstance(state, dict) or not state:
            return _missing_status()
        return {
            "status": str(state.get("Status", "unknown")),
            "running": bool(state.get("Running", False)),
            "started_at": state.get("StartedAt"),
            "finished_at": state.get("FinishedAt"),
        }

    def logs(self, identifier: str, lines: int = 100) -> str:
        """Return the last *lines* of combined stdout/stderr."""
        if lines < 1:
            raise InvalidInput("lines must be a positive integer.")
        result = self._run_command(
            [self.docker_bin, "logs", "--tail", str(lines), identifier],
            check=True,
            error_prefix=f"{self.docker_bin} logs",
            merge_stderr=True,
        )
        return result.stdout or ""

    def backup(self, identifier: str) -> dict[str, object]:
        """Archive the data directory of *identifier* into the backups root."""
        data_dir = self.data_dir(identifier)
        if not data_dir.is_dir():
            raise NotFound(f"Data directory for {identifier} not found: {data_dir}")
        timestamp = backup_timestamp()
        archive = self.backups.archive_path(identifier, timestamp)
        try:
            self.backups.ensure_root()
            create_archive(data_dir, archive, tar_bin=self.tar_bin, timeout=self.timeout)
            size = archive.stat().st_size
            checksum = compute_checksum(archive)
            entry = BackupEntryBuilder(
                identifier=identifier,
                archive_path=archive,
                checksum=checksum,
                size_bytes=size,
                timestamp=timestamp,
                source=data_dir,
            ).build()
            self.backups.append(entry)
        except (BackupError, OSError) as exc:
            raise RuntimeFailure(f"Backup of {identifier} failed: {exc}") from exc
        LOGGER.info("Backed up %s to %s (%d bytes)", identifier, archive, size)
        return {
            "backup_file": str(archive),
            "size": size,
            "timestamp": timestamp,
            "checksum": checksum,
        }

    # ------------------------------------------------------------------
    def _cleanup_failed_provision(
        self,
        identifier: str,
        *,
        remove_containers: bool,
        remove_workdir: bool,
    ) -> CleanupReport:
        LOGGER.error("Provisioning %s failed; cleaning up", identifier)
        report = CleanupReport()
        workdir = self.workdir(identifier)
        if remove_containers:
            report.attempt(
                "compose-down",
                lambda: self._run_command(
                    [self.docker_bin, "compose", "down", "-v"],
                    check=False,
                    error_prefix=f"{self.docker_bin} compose down",
                    cwd=workdir,
                ),
            )
            report.attempt("remove-container", lambda: self._force_remove(identifier))
        if remove_workdir:
            report.attempt("remove-workdir", lambda: shutil.rmtree(workdir))
        return report

    def _force_remove(self, identifier: str) -> None:
        result = self._run_command(
            [self.docker_bin, "rm", "-f", identifier],
            check=False,
            error_prefix=f"{self.docker_bin} rm",
        )
        if result.returncode != 0 and not _is_missing(_output(result)):
            raise RuntimeFailure(f"{self.docker_bin} rm -f {identifier} failed: {_output(result)}")

    def _resolve_container(self, identifier: str) -> tuple[str, str]:
        result = self._run_command(
            [
                self.docker_bin,
                "ps",
                "-a",
                "--filter",
                f"name={identifier}",
                "--format",
                "{{.ID}}\t{{.Names}}\t{{.State}}",
            ],
            check=True,
            error_prefix=f"{self.docker_bin} ps",
        )
        rows = [line.split("\t") for line in (result.stdout or "").splitlines() if line.strip()]
        rows = [row for row in rows if len(row) >= 3]
        if not rows:
            raise RuntimeFailure(f"Container for {identifier} was created but not found.")
        exact = [row for row in rows if row[1] == identifier]
        container_id, _name, state = (exact or rows)[0][:3]
        return container_id, state

    def _apply_limits(self, container_id: str, resources: ResourceLimits) -> None:
        args: list[str] = [self.docker_bin, "update"]
        if resources.cpu:
            args.extend(["--cpus", resources.cpu])
        if resources.memory:
            args.extend(["--memory", resources.memory, "--memory-swap", resources.memory])
        args.append(container_id)
        self._run_command(args, check=True, error_prefix=f"{self.docker_bin} update")

    def _assign_data_owner(self, data_dir: Path) -> None:
        if not self.data_owner:
            return
        uid, gid = parse_owner(self.data_owner)
        try:
            os.chown(data_dir, uid, gid)
        except OSError as exc:
            LOGGER.warning("Could not set owner %s on %s: %s", self.data_owner, data_dir, exc)

    def _require_workdir(self, identifier: str) -> Path:
        workdir = self.workdir(identifier)
        if not workdir.is_dir():
            raise NotFound(f"Working directory for {identifier} not found: {workdir}")
        return workdir

    def _compose(self, identifier: str, *args: str) -> subprocess.CompletedProcess[str]:
        command = [self.docker_bin, "compose", *args]
        return self._run_command(
            command,
            check=True,
            error_prefix=" ".join(command),
            cwd=self.workdir(identifier),
        )

    def _docker(self, command: str, identifier: str) -> subprocess.CompletedProcess[str]:
        return self._run_command(
            [self.docker_bin, command, identifier],
            check=True,
            error_prefix=f"{self.docker_bin} {command}",
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        cwd: Path | None = None,
        merge_stderr: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        try:
            if merge_stderr:
                result = subprocess.run(  # noqa: S603, S607
                    list(args),
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    check=False,
                    cwd=str(cwd) if cwd is not None else None,
                    timeout=self.timeout,
                )
            else:
                result = subprocess.run(  # noqa: S603, S607
                    list(args),
                    capture_output=True,
                    text=True,
                    check=False,
                    cwd=str(cwd) if cwd is not None else None,
                    timeout=self.timeout,
                )
        except FileNotFoundError as exc:
            raise RuntimeFailure(f"{args[0]} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise RuntimeFailure(f"{error_prefix} timed out after {exc.timeout}s") from exc
        if check and result.returncode != 0:
            message = _output(result) or "no output"
            if _is_missing(message):
                raise NotFound(f"{error_prefix}: {message}")
            raise RuntimeFailure(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


def _output(result: subprocess.CompletedProcess[str]) -> str:
    stdout = getattr(result, "stdout", "") or ""
    stderr = getattr(result, "stderr", "") or ""
    return stderr.strip() or stdout.strip()


def _is_missing(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _MISSING_CONTAINER_MARKERS)


def _missing_status() -> dict[str, object]:
    return {"status": "not_found", "running": False, "started_at": None, "finished_at": None}


__all__ = [
    "ComposeRuntime",
    "ResourceLimits",
    "RuntimeHandle",
    "make_identifier",
]
