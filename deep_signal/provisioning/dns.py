"""
dns.py — Cloudflare A records for instance subdomains.

CloudflareDns talks to the zone API; DnsBinder is the best-effort front the
reservation path uses: it hands the upsert to the background runner and
returns immediately, so a DNS outage never blocks or fails a reservation.
"""

import logging

import requests

from .errors import PreconditionError, ProviderError, ProviderUnreachable
from .settings import CLOUDFLARE_API

log = logging.getLogger(__name__)

RECORD_TTL = 300


class CloudflareDns:
    def __init__(self, api_token: str, zone_id: str, domain_suffix: str,
                 base_url: str = CLOUDFLARE_API, timeout: float = 15,
                 session: requests.Session | None = None):
        self.api_token = api_token
        self.zone_id = zone_id
        self.domain_suffix = domain_suffix
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.api_token and self.zone_id)

    def fqdn(self, name: str) -> str:
        if name.endswith(f".{self.domain_suffix}"):
            return name
        return f"{name}.{self.domain_suffix}"

    def _request(self, method: str, path: str, json_body: dict | None = None,
                 params: dict | None = None) -> dict:
        if not self.configured:
            raise PreconditionError(
                "Cloudflare DNS not configured. Set CLOUDFLARE_API_TOKEN and CLOUDFLARE_ZONE_ID."
            )
        url = f"{self.base_url}/zones/{self.zone_id}{path}"
        headers = {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }
        try:
            resp = self.session.request(
                method, url, headers=headers, json=json_body, params=params, timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ProviderUnreachable(f"Cloudflare {method} {path} → {exc}", provider="cloudflare") from exc
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError(
                f"Cloudflare {method} {path} → HTTP {resp.status_code} with a non-JSON body",
                status_code=resp.status_code, provider="cloudflare",
            ) from exc
        if not isinstance(data, dict):
            raise ProviderError(
                f"Cloudflare {method} {path} → unexpected body", status_code=resp.status_code, provider="cloudflare",
            )
        if resp.status_code >= 400 or data.get("success") is False:
            errors = data.get("errors") or []
            message = "; ".join(e.get("message", "") for e in errors if isinstance(e, dict))
            raise ProviderError(
                message or f"HTTP {resp.status_code}", status_code=resp.status_code, provider="cloudflare",
            )
        return data

    def find_records(self, name: str) -> list[dict]:
        data = self._request("GET", "/dns_records", params={"name": self.fqdn(name)})
        return data.get("result") or []

    def upsert_a_record(self, subdomain: str, ip: str) -> dict:
        """Point subdomain at ip, updating the existing record if there is one."""
        name = self.fqdn(subdomain)
        body = {"type": "A", "name": name, "content": ip, "ttl": RECORD_TTL, "proxied": False}
        existing = self.find_records(name)
        if existing:
            data = self._request("PUT", f"/dns_records/{existing[0]['id']}", json_body=body)
            log.info(f"  DNS updated: {name} → {ip}")
        else:
            data = self._request("POST", "/dns_records", json_body=body)
            log.info(f"  DNS created: {name} → {ip}")
        return data.get("result") or {}

    def delete_records(self, name: str) -> int:
        deleted = 0
        for record in self.find_records(name):
            self._request("DELETE", f"/dns_records/{record['id']}")
            deleted += 1
        if deleted:
            log.info(f"  DNS removed: {self.fqdn(name)} ({deleted} record(s))")
        return deleted


class DnsBinder:
    def __init__(self, dns: CloudflareDns, background):
        self.dns = dns
        self.background = background

    def bind(self, subdomain: str, ip: str):
        """Schedule the A record upsert; returns the Future, or None when DNS is off."""
        if not self.dns.configured:
            log.info(f"  DNS not configured, skipping record for {subdomain}")
            return None
        return self.background.submit(f"dns {subdomain}", self.dns.upsert_a_record, subdomain, ip)
