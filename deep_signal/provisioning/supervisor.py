"""
supervisor.py — restart and inspect the managed gateway process remotely.

Instances normally run the gateway under systemd, but a half-provisioned host
may not have the unit yet, so every command carries a plain-process fallback
in the same remote invocation.
"""

import logging
import re
import time

from .config_store import write_command
from .deadline import Deadline, ensure
from .errors import ConfigApplyError, InvalidRequest, RemoteAccessError

log = logging.getLogger(__name__)

SERVICE_NAME = "openclaw"
# The bracket keeps pgrep/pkill from matching the remote shell running them.
PROCESS_PATTERN = "[o]penclaw gateway"
DROPIN_DIR = f"/etc/systemd/system/{SERVICE_NAME}.service.d"
BOOT_MARKER = "/var/lib/deepsignal/bootstrap.done"

_ENV_KEY = re.compile(r"^[A-Z_][A-Z0-9_]*$")


def restart_command(port: int = 3000) -> str:
    return (
        f"systemctl restart {SERVICE_NAME} 2>/dev/null || "
        f"(pkill -f '{PROCESS_PATTERN}'; sleep 2; "
        f"command -v openclaw >/dev/null && cd /root && "
        f"(nohup openclaw gateway --port {port} --bind lan "
        f"> /var/log/openclaw.log 2>&1 < /dev/null &))"
    )


def status_command() -> str:
    return f"systemctl is-active {SERVICE_NAME} 2>/dev/null || pgrep -f '{PROCESS_PATTERN}'"


def _systemd_quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("%", "%%")


class ProcessSupervisor:
    def __init__(self, shell, settle_delay: float = 3.0, port: int = 3000, sleep=time.sleep):
        self.shell = shell
        self.settle_delay = settle_delay
        self.port = port
        self._sleep = sleep

    def restart(self, deadline: Deadline | None = None):
        result = self.shell.run(restart_command(self.port))
        if not result.ok:
            raise ConfigApplyError(
                f"Gateway restart failed (exit {result.exit_status}): "
                f"{(result.stderr or result.stdout).strip()[:200]}"
            )
        log.info(f"  Restart issued, waiting {self.settle_delay:g}s for the gateway to bind")
        if deadline is not None:
            deadline.sleep(self.settle_delay)
        else:
            self._sleep(self.settle_delay)

    def is_running(self) -> bool:
        result = self.shell.run(status_command())
        for line in result.stdout.splitlines():
            line = line.strip()
            # `systemctl is-active` prints "active"; pgrep prints pids.
            if line == "active" or line.isdigit():
                return True
        return False

    def set_env(self, key: str, value: str):
        """Persist an environment variable for the gateway unit via a systemd drop-in."""
        if not _ENV_KEY.match(key):
            raise InvalidRequest(f"Invalid environment variable name: {key!r}")
        if "\n" in value or "\r" in value:
            raise InvalidRequest(f"Value for {key} must be a single line")
        path = f"{DROPIN_DIR}/env-{key.lower()}.conf"
        unit = f'[Service]\nEnvironment="{key}={_systemd_quote(value)}"\n'
        result = self.shell.run(f"{write_command(path, unit)}test -f {path} && systemctl daemon-reload")
        if not result.ok:
            raise ConfigApplyError(f"Setting {key} failed (exit {result.exit_status})")
        log.info(f"  {key} set for {SERVICE_NAME}")

    def is_booted(self) -> bool:
        return self.shell.run(f"test -f {BOOT_MARKER}").ok


def wait_for_boot(open_shell, host: str, attempts: int = 36, interval: float = 10.0,
                  deadline: Deadline | None = None):
    """Block until the boot script on host has finished.

    Retries both the SSH connection (sshd may not be up yet) and the marker
    check; raises RemoteAccessError once attempts run out.
    """
    deadline = ensure(deadline)
    log.info(f"  Waiting for bootstrap on {host}...")
    last_error = None
    for attempt in range(1, attempts + 1):
        deadline.check("boot wait")
        try:
            with open_shell(host) as shell:
                if ProcessSupervisor(shell).is_booted():
                    log.info(f"  Bootstrap finished (attempt {attempt})")
                    return
        except RemoteAccessError as exc:
            last_error = exc
            if attempt % 6 == 0:
                log.info(f"  SSH not ready yet (attempt {attempt})...")
        if attempt < attempts:
            deadline.sleep(interval)
    detail = f": {last_error}" if last_error else ""
    raise RemoteAccessError(f"{host} did not finish bootstrapping after {attempts} attempts{detail}")
