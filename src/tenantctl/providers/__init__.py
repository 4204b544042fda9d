"""Provider interfaces for tenantctl."""
from __future__ import annotations

from .proxy import ProxyControlClient, ProxySession, parse_expiry
from .runtime import ComposeRuntime, ResourceLimits, RuntimeHandle, make_identifier

__all__ = [
    "ComposeRuntime",
    "ProxyControlClient",
    "ProxySession",
    "ResourceLimits",
    "RuntimeHandle",
    "make_identifier",
    "parse_expiry",
]
