"""
settings.py — environment-driven configuration for the provisioning core.

Every knob is read from the process environment (the CLI loads a .env file
first via python-dotenv). Library code receives a Settings instance and never
reads os.environ on its own, so tests build Settings(...) directly.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from .errors import PreconditionError

HETZNER_API = "https://api.hetzner.cloud/v1"
CLOUDFLARE_API = "https://api.cloudflare.com/client/v4"

DOMAIN_SUFFIX = "ds.jgiebz.com"
HOSTNAME_PREFIX = "deepsignal-"
GATEWAY_PORT = 3000


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise PreconditionError(f"{name} must be a whole number, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise PreconditionError(f"{name} must be a number, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    hetzner_api_token: str = ""
    hetzner_api: str = HETZNER_API
    cloudflare_api_token: str = ""
    cloudflare_zone_id: str = ""
    cloudflare_api: str = CLOUDFLARE_API
    domain_suffix: str = DOMAIN_SUFFIX
    hostname_prefix: str = HOSTNAME_PREFIX

    # Cloud VM shape
    region: str = "ash"
    server_type: str = "cpx21"
    image: str = "ubuntu-24.04"

    # Remote shell
    ssh_key_path: str = "~/.ssh/hetzner_deepsignal"
    ssh_key_name: str = ""
    ssh_user: str = "root"
    ssh_connect_timeout: float = 10.0
    ssh_command_timeout: float = 60.0

    # Managed gateway
    gateway_port: int = GATEWAY_PORT
    restart_settle: float = 3.0
    default_api_key: str = ""
    slack_app_token: str = ""

    # Readiness polling
    poll_attempts: int = 90
    poll_interval: float = 3.0
    probe_timeout: float = 5.0
    on_poll_timeout: str = "assume_ready"

    # Slow path: wait for the VM address and the boot script
    address_attempts: int = 30
    address_interval: float = 5.0
    boot_attempts: int = 36
    boot_interval: float = 10.0

    # Rate limiting
    rate_limit: int = 3
    rate_window: float = 3600.0

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            hetzner_api_token=os.getenv("HETZNER_API_TOKEN", ""),
            cloudflare_api_token=os.getenv("CLOUDFLARE_API_TOKEN", ""),
            cloudflare_zone_id=os.getenv("CLOUDFLARE_ZONE_ID", ""),
            domain_suffix=os.getenv("DEEPSIGNAL_DOMAIN_SUFFIX", DOMAIN_SUFFIX),
            region=os.getenv("DEEPSIGNAL_REGION", "ash"),
            server_type=os.getenv("DEEPSIGNAL_SERVER_TYPE", "cpx21"),
            ssh_key_path=os.getenv("DEEPSIGNAL_SSH_KEY_PATH", "~/.ssh/hetzner_deepsignal"),
            ssh_key_name=os.getenv("DEEPSIGNAL_SSH_KEY_NAME", ""),
            ssh_user=os.getenv("DEEPSIGNAL_SSH_USER", "root"),
            default_api_key=os.getenv("ANTHROPIC_API_KEY", ""),
            slack_app_token=os.getenv("SLACK_APP_TOKEN", ""),
            poll_attempts=_env_int("DEEPSIGNAL_POLL_ATTEMPTS", 90),
            poll_interval=_env_float("DEEPSIGNAL_POLL_INTERVAL", 3.0),
            on_poll_timeout=os.getenv("DEEPSIGNAL_ON_POLL_TIMEOUT", "assume_ready"),
            rate_limit=_env_int("DEEPSIGNAL_RATE_LIMIT", 3),
            rate_window=_env_float("DEEPSIGNAL_RATE_WINDOW", 3600.0),
        )

    def domain_for(self, subdomain: str) -> str:
        return f"{subdomain}.{self.domain_suffix}"

    def hostname_for(self, subdomain: str) -> str:
        return f"{self.hostname_prefix}{subdomain}"

    def subdomain_from_hostname(self, hostname: str) -> str:
        if hostname.startswith(self.hostname_prefix):
            return hostname[len(self.hostname_prefix):]
        return hostname

    def ssh_private_key(self) -> str:
        """Read the operator's private key used for every remote shell."""
        path = Path(self.ssh_key_path).expanduser()
        if not path.exists():
            raise PreconditionError(f"SSH key not found at {path}")
        return path.read_text()
