"""Service template directories and environment-file rendering.

A template lives in ``<templates_dir>/<name>/`` and contains::

    docker-compose.yaml   # deployment descriptor, copied verbatim
    .env.template         # environment file with ${PLACEHOLDER} markers
    template.yml          # optional metadata (description, version, defaults)

Only the fixed placeholder set in :data:`ENV_PLACEHOLDERS` is substituted.
Any other ``${...}`` marker is left in place and reported as unresolved so the
problem is visible in the rendered file instead of being silently blanked.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import yaml
from packaging.version import InvalidVersion, Version

from .errors import NotFound

if TYPE_CHECKING:
    from .catalog import Catalog

LOGGER = logging.getLogger(__name__)

ENV_PLACEHOLDERS = ("INSTANCE_NAME", "CONTAINER_NAME", "SUBDOMAIN", "PORT", "BASE_DOMAIN")
DESCRIPTOR_NAMES = ("docker-compose.yaml", "docker-compose.yml", "compose.yaml")
ENV_TEMPLATE_NAME = ".env.template"
METADATA_NAME = "template.yml"

_PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_SAFE_NAME = re.compile(r"^[A-Za-z0-9-]+$")


class TemplateError(RuntimeError):
    """Raised when a template directory is incomplete or malformed."""


@dataclass(slots=True)
class RenderResult:
    """Rendered environment file plus any placeholders left untouched."""

    content: str
    unresolved: tuple[str, ...] = ()


def render_env_template(template: str, values: Mapping[str, object]) -> RenderResult:
    """Substitute the fixed placeholder set in *template*."""
    unresolved: list[str] = []

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key in ENV_PLACEHOLDERS and key in values:
            return str(values[key])
        if key not in unresolved:
            unresolved.append(key)
        return match.group(0)

    content = _PLACEHOLDER.sub(_replace, template)
    return RenderResult(content=content, unresolved=tuple(unresolved))


@dataclass(frozen=True)
class TemplateDefinition:
    """A template directory resolved on disk."""

    name: str
    path: Path
    descriptor_path: Path
    env_template_path: Path
    description: str | None = None
    version: str | None = None
    default_port: int | None = None
    default_cpu: str = "1"
    default_memory: str = "512M"

    def catalog_fields(self) -> dict[str, object]:
        """Return keyword arguments for :meth:`Catalog.upsert_template`."""
        return {
            "description": self.description,
            "version": self.version,
            "default_port": self.default_port,
            "default_cpu": self.default_cpu,
            "default_memory": self.default_memory,
        }


@dataclass(slots=True)
class TemplateLibrary:
    """Discover template directories under *root*."""

    root: Path

    def names(self) -> list[str]:
        """Return the names of template directories, sorted."""
        if not self.root.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.root.iterdir()
            if entry.is_dir() and not entry.name.startswith(".")
        )

    def get(self, name: str) -> TemplateDefinition:
        """Return the template *name* or raise :class:`NotFound`."""
        if not _SAFE_NAME.match(name):
            raise TemplateError(
                f"Template name '{name}' must contain only letters, numbers, and dashes."
            )
        path = self.root / name
        if not path.is_dir():
            raise NotFound(f"Template directory not found: {path}")

        descriptor = next(
            (path / candidate for candidate in DESCRIPTOR_NAMES if (path / candidate).is_file()),
            None,
        )
        if descriptor is None:
            expected = ", ".join(DESCRIPTOR_NAMES)
            raise TemplateError(f"Template '{name}' has no deployment descriptor ({expected}).")
        env_template = path / ENV_TEMPLATE_NAME
        if not env_template.is_file():
            raise TemplateError(f"Template '{name}' is missing {ENV_TEMPLATE_NAME}.")

        metadata = _load_metadata(path / METADATA_NAME)
        return TemplateDefinition(
            name=name,
            path=path,
            descriptor_path=descriptor,
            env_template_path=env_template,
            description=_optional_str(metadata.get("description")),
            version=_parse_version(metadata.get("version"), name),
            default_port=_optional_int(metadata.get("default_port"), name, "default_port"),
            default_cpu=str(metadata.get("default_cpu", "1")),
            default_memory=str(metadata.get("default_memory", "512M")),
        )

    def render_env(self, name: str, values: Mapping[str, object]) -> RenderResult:
        """Render the ``.env`` file for template *name*."""
        definition = self.get(name)
        text = definition.env_template_path.read_text(encoding="utf-8")
        result = render_env_template(text, values)
        if result.unresolved:
            LOGGER.warning(
                "Template %s left unresolved placeholders: %s",
                name,
                ", ".join(result.unresolved),
            )
        return result

    def sync(self, catalog: Catalog) -> list[dict[str, object]]:
        """Register every template directory in *catalog*."""
        registered: list[dict[str, object]] = []
        for name in self.names():
            definition = self.get(name)
            registered.append(catalog.upsert_template(name, **definition.catalog_fields()))
            LOGGER.info("Registered service template %s", name)
        return registered


def _load_metadata(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise TemplateError(f"Failed to parse template metadata {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise TemplateError(f"Template metadata {path} must contain a mapping.")
    return {str(key): value for key, value in data.items()}


def _parse_version(value: object | None, name: str) -> str | None:
    if value is None:
        return None
    try:
        return str(Version(str(value)))
    except InvalidVersion as exc:
        raise TemplateError(f"Template '{name}' has an invalid version {value!r}.") from exc


def _optional_int(value: object | None, name: str, label: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise TemplateError(f"Template '{name}' {label} must be an integer.")
    try:
        return int(str(value))
    except ValueError as exc:
        raise TemplateError(f"Template '{name}' {label} must be an integer.") from exc


def _optional_str(value: object | None) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


__all__ = [
    "ENV_PLACEHOLDERS",
    "RenderResult",
    "TemplateDefinition",
    "TemplateError",
    "TemplateLibrary",
    "render_env_template",
]
