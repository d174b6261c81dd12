"""
reservation.py — create a cloud VM as soon as a display name is known.

A reservation is a Hetzner server booting the generated cloud-init script with
free-tier defaults and a fresh gateway access token. By the time the user
finishes the rest of onboarding the machine is usually up, and deploy only
has to merge the final settings in.
"""

import logging
import secrets
from dataclasses import dataclass, field
from enum import Enum

from .bootscript import build_boot_script, build_default_config, build_soul
from .deadline import Deadline, ensure
from .errors import FailureKind, InvalidRequest, NoSshKeyConfigured, ProviderError
from .hetzner import HetznerClient, server_address
from .naming import sanitize_label, slugify
from .settings import Settings

log = logging.getLogger(__name__)

MANAGED_BY = "deep-signal"


class InstanceState(str, Enum):
    RESERVED = "reserved"
    CONFIGURING = "configuring"
    READY = "ready"
    FAILED = "failed"


def generate_access_token() -> str:
    return secrets.token_hex(24)


@dataclass
class Instance:
    id: int | str
    hostname: str
    subdomain: str
    domain: str
    access_token: str
    public_address: str | None = None
    state: InstanceState = InstanceState.RESERVED
    failure: FailureKind | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def dashboard_url(self) -> str:
        return f"https://{self.domain}"

    def direct_url(self, port: int = 3000) -> str | None:
        if not self.public_address:
            return None
        return f"http://{self.public_address}:{port}"

    def to_record(self) -> dict:
        return {
            "id": self.id,
            "hostname": self.hostname,
            "publicAddress": self.public_address or "pending",
            "domain": self.domain,
            "subdomain": self.subdomain,
            "accessToken": self.access_token,
            "dashboardUrl": self.dashboard_url,
        }

    @classmethod
    def from_record(cls, record: dict) -> "Instance":
        missing = [k for k in ("id", "domain", "accessToken") if not record.get(k)]
        if missing:
            raise InvalidRequest(f"Reservation record is missing {', '.join(missing)}")
        domain = record["domain"]
        subdomain = record.get("subdomain") or domain.split(".", 1)[0]
        address = record.get("publicAddress")
        return cls(
            id=record["id"],
            hostname=record.get("hostname") or subdomain,
            subdomain=subdomain,
            domain=domain,
            access_token=record["accessToken"],
            public_address=None if address in (None, "", "pending") else address,
        )


class ReservationService:
    def __init__(self, hetzner: HetznerClient, dns_binder, settings: Settings):
        self.hetzner = hetzner
        self.dns_binder = dns_binder
        self.settings = settings

    def _ssh_key(self) -> dict:
        keys = self.hetzner.list_ssh_keys()
        if not keys:
            raise NoSshKeyConfigured()
        wanted = self.settings.ssh_key_name
        if wanted:
            for key in keys:
                if key.get("name") == wanted:
                    return key
            raise NoSshKeyConfigured(f"SSH key '{wanted}' is not registered with the cloud provider")
        return keys[0]

    def reserve(
        self,
        display_name: str,
        region: str | None = None,
        server_type: str | None = None,
        config: dict | None = None,
        soul: str | None = None,
        access_token: str | None = None,
        mode: str = "reserved",
    ) -> Instance:
        """Create the VM and return it in the reserved state.

        config and soul default to the free-tier config and friendly persona.
        Pass access_token when config already embeds one.
        """
        name = (display_name or "").strip()
        if not name:
            raise InvalidRequest("Agent name is required")

        s = self.settings
        subdomain = slugify(name)
        domain = s.domain_for(subdomain)
        hostname = s.hostname_for(subdomain)
        key = self._ssh_key()
        token = access_token or generate_access_token()

        if config is None:
            config = build_default_config(token, s.default_api_key, port=s.gateway_port)
        if soul is None:
            soul = build_soul(name, domain)
        user_data = build_boot_script(name, domain, token, config, soul, port=s.gateway_port, mode=mode)

        labels = {
            "managed-by": MANAGED_BY,
            "agent": sanitize_label(name),
            "subdomain": subdomain,
            "mode": sanitize_label(mode),
        }
        log.info(f"  Creating {server_type or s.server_type} in {region or s.region} for {domain} (key: {key.get('name')})")
        server = self.hetzner.create_server(
            name=hostname,
            server_type=server_type or s.server_type,
            location=region or s.region,
            image=s.image,
            user_data=user_data,
            ssh_keys=[key["id"]],
            labels=labels,
        )

        instance = Instance(
            id=server["id"],
            hostname=hostname,
            subdomain=subdomain,
            domain=domain,
            access_token=token,
            public_address=server_address(server),
        )
        if instance.public_address:
            self.dns_binder.bind(subdomain, instance.public_address)
        else:
            log.info(f"  No address yet for server {instance.id}, DNS deferred")
        return instance

    def wait_for_address(self, instance: Instance, attempts: int = 30, interval: float = 5.0,
                         deadline: Deadline | None = None) -> Instance:
        if instance.public_address:
            return instance
        deadline = ensure(deadline)
        for attempt in range(1, attempts + 1):
            deadline.check("address wait")
            address = server_address(self.hetzner.get_server(instance.id))
            if address:
                instance.public_address = address
                log.info(f"  Server {instance.id} has address {address} (attempt {attempt})")
                self.dns_binder.bind(instance.subdomain, address)
                return instance
            if attempt < attempts:
                deadline.sleep(interval)
        raise ProviderError(f"Server {instance.id} has no public address after {attempts} attempts")
