"""
remote_exec.py — SSH command channel into provisioned instances.

RemoteShell wraps a paramiko client: connect with the operator key and a
connect timeout, run one shell command at a time, hand back stdout, stderr and
the exit status. Connection, auth and timeout failures surface as
RemoteAccessError; a non-zero exit status is returned, not raised, because the
callers decide what a failing command means.
"""

import io
import logging
import socket
from dataclasses import dataclass

import paramiko
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

from .errors import RemoteAccessError

log = logging.getLogger(__name__)

_KEY_CLASSES = (paramiko.Ed25519Key, paramiko.RSAKey, paramiko.ECDSAKey)


@dataclass
class CommandResult:
    stdout: str
    stderr: str
    exit_status: int

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


def load_private_key(private_key_pem: str) -> paramiko.PKey:
    """Parse an OpenSSH/PEM private key of any type paramiko understands."""
    for key_class in _KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(private_key_pem))
        except paramiko.SSHException:
            continue
    raise RemoteAccessError("Unsupported or unreadable SSH private key")


def generate_ssh_keypair() -> dict:
    """Generate an ed25519 SSH keypair in memory."""
    private_key = Ed25519PrivateKey.generate()
    private_pem = private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.OpenSSH,
        serialization.NoEncryption(),
    ).decode()
    public_openssh = private_key.public_key().public_bytes(
        serialization.Encoding.OpenSSH,
        serialization.PublicFormat.OpenSSH,
    ).decode()
    return {"private_key_pem": private_pem, "public_key_openssh": public_openssh}


class RemoteShell:
    def __init__(
        self,
        host: str,
        private_key_pem: str,
        username: str = "root",
        connect_timeout: float = 10.0,
        command_timeout: float = 60.0,
    ):
        self.host = host
        self.username = username
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self._pkey = load_private_key(private_key_pem)
        self._client: paramiko.SSHClient | None = None

    def connect(self) -> "RemoteShell":
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                self.host,
                username=self.username,
                pkey=self._pkey,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise RemoteAccessError(f"SSH to {self.username}@{self.host} failed: {exc}") from exc
        log.debug(f"  SSH connected to {self.username}@{self.host}")
        self._client = client
        return self

    def close(self):
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> "RemoteShell":
        if self._client is None:
            self.connect()
        return self

    def __exit__(self, *exc_info):
        self.close()

    def run(self, command: str, timeout: float | None = None) -> CommandResult:
        if self._client is None:
            self.connect()
        try:
            _stdin, stdout, stderr = self._client.exec_command(
                command, timeout=timeout or self.command_timeout,
            )
            out = stdout.read().decode(errors="replace")
            err = stderr.read().decode(errors="replace")
            exit_status = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, socket.timeout, OSError) as exc:
            raise RemoteAccessError(f"Remote command on {self.host} failed: {exc}") from exc
        if exit_status != 0:
            log.debug(f"  [{self.host}] exit {exit_status}: {err.strip()[:300]}")
        return CommandResult(stdout=out, stderr=err, exit_status=exit_status)


def shell_factory(private_key_pem: str, username: str = "root",
                  connect_timeout: float = 10.0, command_timeout: float = 60.0):
    """Return host -> RemoteShell, the seam the orchestrator opens shells through."""
    def open_shell(host: str) -> RemoteShell:
        return RemoteShell(
            host, private_key_pem, username=username,
            connect_timeout=connect_timeout, command_timeout=command_timeout,
        )
    return open_shell


def resolve_host(domain: str) -> str:
    """Resolve a domain to its first IPv4 address."""
    try:
        infos = socket.getaddrinfo(domain, None, socket.AF_INET, socket.SOCK_STREAM)
    except socket.gaierror as exc:
        raise RemoteAccessError(f"Could not resolve domain: {domain}") from exc
    return infos[0][4][0]
