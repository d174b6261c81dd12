"""
hetzner.py — Hetzner Cloud API client (servers and SSH keys).

Every call goes through _request(): bearer auth, JSON in and out, 30s timeout.
HTTP errors raise ProviderError carrying Hetzner's own message (so capacity
failures can be recognised upstream); connection problems raise
ProviderUnreachable.
"""

import logging

import requests

from .errors import PreconditionError, ProviderError, ProviderUnreachable
from .settings import HETZNER_API

log = logging.getLogger(__name__)


def _error_message(resp) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:300] or f"HTTP {resp.status_code}"
    err = data.get("error") if isinstance(data, dict) else None
    if isinstance(err, dict):
        code = err.get("code", "")
        message = err.get("message", "")
        return f"{message} ({code})" if code else message or f"HTTP {resp.status_code}"
    return resp.text[:300] or f"HTTP {resp.status_code}"


def server_address(server: dict) -> str | None:
    """Public IPv4 of a server payload, or None while it is still pending."""
    ip = ((server.get("public_net") or {}).get("ipv4") or {}).get("ip")
    return ip or None


class HetznerClient:
    def __init__(self, api_token: str, base_url: str = HETZNER_API, timeout: float = 30,
                 session: requests.Session | None = None):
        self.api_token = api_token
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, json_body: dict | None = None,
                 params: dict | None = None) -> dict:
        if not self.api_token:
            raise PreconditionError("Hetzner API not configured. Set HETZNER_API_TOKEN.")
        url = f"{self.base_url}{path}"
        headers = {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }
        try:
            resp = self.session.request(
                method, url, headers=headers, json=json_body, params=params, timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise ProviderUnreachable(f"Hetzner {method} {path} → {exc}") from exc
        if resp.status_code >= 400:
            message = _error_message(resp)
            log.warning(f"  Hetzner {method} {path} → HTTP {resp.status_code}: {message}")
            raise ProviderError(message, status_code=resp.status_code)
        if resp.status_code == 204 or not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError as exc:
            log.warning(f"  Hetzner {method} {path} → HTTP {resp.status_code} with a non-JSON body")
            raise ProviderError(
                f"Hetzner {method} {path} returned a non-JSON body", status_code=resp.status_code,
            ) from exc

    def list_ssh_keys(self) -> list[dict]:
        return self._request("GET", "/ssh_keys").get("ssh_keys", [])

    def create_server(
        self,
        name: str,
        server_type: str,
        location: str,
        image: str,
        user_data: str,
        ssh_keys: list,
        labels: dict[str, str],
        start_after_create: bool = True,
    ) -> dict:
        body = {
            "name": name,
            "server_type": server_type,
            "location": location,
            "image": image,
            "ssh_keys": ssh_keys,
            "user_data": user_data,
            "start_after_create": start_after_create,
            "labels": labels,
        }
        data = self._request("POST", "/servers", json_body=body)
        server = data.get("server")
        if not server:
            raise ProviderError("Hetzner returned no server in create response")
        log.info(f"  Server created: id={server.get('id')} name={name}")
        return server

    def get_server(self, server_id) -> dict:
        return self._request("GET", f"/servers/{server_id}").get("server", {})

    def list_servers(self, label_selector: str | None = None) -> list[dict]:
        params = {"label_selector": label_selector} if label_selector else None
        return self._request("GET", "/servers", params=params).get("servers", [])

    def delete_server(self, server_id):
        self._request("DELETE", f"/servers/{server_id}")
        log.info(f"  Server {server_id} deleted")
