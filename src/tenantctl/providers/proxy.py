"""Client for the reverse-proxy / DNS / certificate control plane.

The control plane speaks JSON over HTTPS and authenticates with a bearer
token obtained from ``POST /login``. Tokens are cached in a
:class:`ProxySession` and refreshed once fewer than
``proxy.token_refresh_margin`` seconds remain before expiry. Every
authenticated request goes through :meth:`ProxyControlClient.get_token`.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import requests

from ..config import AppConfig, ProxyConfig
from ..errors import NotFound, ProxyFailure

LOGGER = logging.getLogger(__name__)

_LOCAL_UPSTREAM = "http://127.0.0.1:{port}"


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(slots=True)
class ProxySession:
    """Cached bearer token and its expiry."""

    token: str | None = None
    expires_at: datetime | None = None

    def needs_refresh(self, now: datetime, margin: timedelta) -> bool:
        """Return True when the token is missing or expires within *margin*."""
        if not self.token or self.expires_at is None:
            return True
        return self.expires_at - now <= margin


def parse_expiry(value: object) -> datetime | None:
    """Parse the ``expire`` field of a login response.

    Accepts ISO-8601 strings (with or without a ``Z`` suffix) and numeric
    epoch values in seconds or milliseconds. Naive timestamps are taken as
    UTC. Returns ``None`` when the value cannot be interpreted.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = float(value) / 1000 if value > 1e12 else float(value)
        return datetime.fromtimestamp(seconds, tz=UTC)
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


class ProxyControlClient:
    """Drive DNS records, reverse-proxy sites and certificates for instances."""

    def __init__(
        self,
        config: ProxyConfig,
        base_domain: str,
        *,
        http: requests.Session | None = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.base_domain = base_domain
        self.http = http or requests.Session()
        self.session = ProxySession()
        self._clock = clock
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: AppConfig) -> ProxyControlClient:
        """Build a client from resolved configuration."""
        return cls(config.proxy, config.base_domain)

    def domain_for(self, subdomain: str) -> str:
        """Return the public domain served for *subdomain*."""
        return f"{subdomain}.{self.base_domain}"

    # Session ---------------------------------------------------------
    def login(self) -> str:
        """Exchange credentials for a fresh bearer token."""
        if not self.config.username or not self.config.password:
            raise ProxyFailure("proxy.username and proxy.password must be configured.")
        response = self._send(
            "POST",
            "/login",
            payload={"username": self.config.username, "password": self.config.password},
            authenticated=False,
        )
        body = self._checked(response, "login")
        token = body.get("token")
        if not isinstance(token, str) or not token:
            raise ProxyFailure("Proxy login response did not include a token.")
        expires_at = parse_expiry(body.get("expire"))
        if expires_at is None:
            LOGGER.warning("Proxy login response has no usable expiry; token will not be reused")
        self.session = ProxySession(token=token, expires_at=expires_at)
        LOGGER.info("Proxy login succeeded; token expires at %s", expires_at)
        return token

    def get_token(self) -> str:
        """Return the cached token, logging in again when it is close to expiry."""
        margin = timedelta(seconds=self.config.token_refresh_margin)
        if self.session.needs_refresh(self._clock(), margin) or not self.session.token:
            return self.login()
        return self.session.token

    def test_connection(self) -> bool:
        """Return True when a login round-trip succeeds."""
        try:
            self.login()
        except ProxyFailure as exc:
            LOGGER.error("Proxy connection test failed: %s", exc)
            return False
        return True

    # DNS -------------------------------------------------------------
    def add_domain(self, domain: str) -> dict[str, object]:
        """Register *domain* pointing at the server IP; an existing record is success."""
        response = self._send(
            "POST",
            "/api/dns/domains",
            payload={
                "name": domain,
                "ips": [{"ip": self.config.server_ip}],
                "source": "client",
                "ns": 1,
            },
        )
        if _is_conflict(response):
            LOGGER.info("DNS domain %s already exists", domain)
            return {"domain": domain, "status": "exists"}
        body = self._checked(response, f"add domain {domain}")
        LOGGER.info("DNS domain %s added", domain)
        return {"domain_id": _data_id(body), "domain": domain, "status": "created"}

    # Sites -----------------------------------------------------------
    def create_site(self, subdomain: str, port: int) -> dict[str, object]:
        """Create a reverse-proxy site for ``<subdomain>.<base_domain>`` -> *port*.

        The DNS record is added first. After the site exists the client waits
        ``proxy.propagation_delay`` seconds and requests a certificate; a
        certificate failure leaves ``ssl`` as ``None`` without failing the call.
        """
        domain = self.domain_for(subdomain)
        upstream = _LOCAL_UPSTREAM.format(port=port)
        self.add_domain(domain)
        response = self._send(
            "PUT",
            "/api/master",
            payload={
                "domain": domain,
                "aliases": [{"name": f"www.{domain}"}],
                "ips": [{"ip": self.config.server_ip}],
                "owner": self.config.owner_id,
                "mode": "reverse_proxy",
                "php_version": None,
                "upstreams": [{"type": "host", "address": upstream}],
                "database": None,
            },
        )
        body = self._checked(response, f"create site {domain}")
        site_id = _data_id(body)
        if site_id is None:
            raise ProxyFailure(f"Proxy did not return a site id for {domain}.")
        LOGGER.info("Proxy site %s created -> %s (id %s)", domain, upstream, site_id)

        if self.config.propagation_delay > 0:
            LOGGER.debug("Waiting %.1fs for DNS propagation", self.config.propagation_delay)
            self._sleep(self.config.propagation_delay)
        ssl = self.create_certificate(domain, site_id)
        return {
            "site_id": site_id,
            "domain": domain,
            "status": "created",
            "upstream": upstream,
            "ssl": ssl,
        }

    def create_certificate(self, domain: str, site_id: object) -> dict[str, object] | None:
        """Request a Let's Encrypt certificate; returns ``None`` on failure."""
        try:
            response = self._send(
                "POST",
                "/api/certificates",
                payload={
                    "type": "letsencrypt",
                    "email": self.config.ssl_email or f"admin@{domain}",
                    "common_name": domain,
                    "alternative_name": f"www.{domain}",
                    "force_dns_validation": False,
                    "virtualhost": site_id,
                    "length": 2048,
                },
            )
            body = self._checked(response, f"create certificate for {domain}")
        except ProxyFailure as exc:
            LOGGER.warning("Certificate request for %s failed; continuing without TLS: %s", domain, exc)
            return None
        data = _data(body)
        return {
            "certificate_id": data.get("id"),
            "domain": domain,
            "status": "creating",
            "expires_at": data.get("expired_at"),
        }

    def delete_site(self, domain: str) -> dict[str, object]:
        """Delete the site serving *domain*; an absent site reports ``not_found``.

        DNS records are kept so a later instance can reuse the domain.
        """
        site = self._find_site(domain)
        if site is None:
            LOGGER.info("Proxy site %s not found; nothing to delete", domain)
            return {"domain": domain, "status": "not_found"}
        site_id = site.get("id")
        response = self._send(
            "PUT",
            f"/api/sites/{site_id}/delete",
            payload={
                "remove_databases": True,
                "remove_dns_domains": False,
                "remove_email_domains": True,
                "remove_sub_domains": True,
                "remove_dns_domains_from_provider": False,
            },
        )
        self._checked(response, f"delete site {domain}")
        LOGGER.info("Proxy site %s deleted (id %s)", domain, site_id)
        return {"site_id": site_id, "domain": domain, "status": "deleted"}

    def update_site_proxy(self, domain: str, port: int) -> dict[str, object]:
        """Point the site for *domain* at a single new local upstream."""
        site = self._find_site(domain)
        if site is None:
            raise NotFound(f"Proxy site {domain} not found.")
        upstream = _LOCAL_UPSTREAM.format(port=port)
        response = self._send(
            "PUT",
            "/api/master",
            payload={**site, "upstreams": [{"type": "host", "address": upstream}]},
        )
        self._checked(response, f"update site {domain}")
        LOGGER.info("Proxy site %s now targets %s", domain, upstream)
        return {"site_id": site.get("id"), "domain": domain, "port": port, "status": "updated"}

    def get_site_info(self, domain: str) -> dict[str, object] | None:
        """Return a summary of the site serving *domain*, or ``None``."""
        site = self._find_site(domain)
        if site is None:
            return None
        return {
            "site_id": site.get("id"),
            "domain": site.get("domain"),
            "upstreams": site.get("upstreams"),
            "mode": site.get("mode"),
            "status": site.get("status"),
            "enabled": site.get("enabled"),
        }

    # ------------------------------------------------------------------
    def _find_site(self, domain: str) -> dict[str, object] | None:
        response = self._send("GET", "/api/master")
        body = self._checked(response, "list sites")
        sites = body.get("data")
        if not isinstance(sites, list):
            raise ProxyFailure("Proxy site listing was not a list.")
        for site in sites:
            if isinstance(site, Mapping) and site.get("domain") == domain:
                return dict(site)
        return None

    def _send(
        self,
        method: str,
        path: str,
        *,
        payload: Mapping[str, object] | None = None,
        authenticated: bool = True,
    ) -> requests.Response:
        headers = {"Content-Type": "application/json"}
        if authenticated:
            headers["Authorization"] = f"Bearer {self.get_token()}"
        try:
            return self.http.request(
                method,
                f"{self.config.url}{path}",
                json=dict(payload) if payload is not None else None,
                headers=headers,
                timeout=self.config.timeout,
                verify=self.config.verify_tls,
            )
        except requests.Timeout as exc:
            raise ProxyFailure(f"{method} {path} timed out after {self.config.timeout}s") from exc
        except requests.RequestException as exc:
            raise ProxyFailure(f"{method} {path} failed: {exc}") from exc

    def _checked(self, response: requests.Response, action: str) -> dict[str, object]:
        body = _json_body(response)
        if response.status_code >= 400:
            detail = body.get("message") if isinstance(body.get("message"), str) else response.text
            raise ProxyFailure(
                f"Proxy {action} failed (HTTP {response.status_code}): {str(detail).strip()}"
            )
        return body


def _json_body(response: requests.Response) -> dict[str, object]:
    try:
        body = response.json()
    except ValueError:
        return {}
    if isinstance(body, Mapping):
        return dict(body)
    return {"data": body}


def _is_conflict(response: requests.Response) -> bool:
    if response.status_code == 409:
        return True
    if response.status_code < 400:
        return False
    message = _json_body(response).get("message")
    return isinstance(message, str) and "already exists" in message.lower()


def _data(body: Mapping[str, object]) -> dict[str, object]:
    data = body.get("data")
    return dict(data) if isinstance(data, Mapping) else {}


def _data_id(body: Mapping[str, object]) -> object | None:
    return _data(body).get("id")


__all__ = ["ProxyControlClient", "ProxySession", "parse_expiry"]
