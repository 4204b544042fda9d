"""Catalog persistence for tenantctl."""
from __future__ import annotations

from .models import (
    INSTANCE_STATUSES,
    STATUS_DELETED,
    STATUS_RUNNING,
    STATUS_STOPPED,
    Instance,
    PortAssignment,
    ServiceTemplate,
)
from .store import Catalog

__all__ = [
    "Catalog",
    "INSTANCE_STATUSES",
    "Instance",
    "PortAssignment",
    "STATUS_DELETED",
    "STATUS_RUNNING",
    "STATUS_STOPPED",
    "ServiceTemplate",
]
